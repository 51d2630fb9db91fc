# Routes package init
"""
Image2Sheet Backend — API Routes Package
=========================================

Route Inventory:
    - auth.py:         /api/auth/*         (sign-in, verify, logout)
    - users.py:        /api/users/*        (profile, usage)
    - extractions.py:  /api/extractions/*  (guest + signed-in extraction, history)
    - billing.py:      /api/billing/*      (purchases, subscriptions)
    - health.py:       /health

Routes stay thin: read the request, call a service, shape the response.
Errors are raised as Image2SheetError subclasses and rendered by the
handlers registered in main.py.
"""
