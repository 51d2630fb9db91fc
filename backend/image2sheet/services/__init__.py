# Services package init
"""
Image2Sheet Backend — Services Layer
=====================================

What:  Business logic between routes (HTTP) and the database (persistence).
How:   Services take an AsyncSession plus plain values, apply the business
       rules, and return models or small dataclasses. Each module exposes a
       singleton the routes import; collaborators are constructor arguments
       so tests can build their own instances.

Service Inventory:
    - quota_window: Pure rolling-window arithmetic shared by both trackers
    - GuestQuotaTracker: Per-IP guest allowance (in-process store + sweeper)
    - UserQuotaTracker: Per-user daily allowance persisted on the user row
    - EntitlementService: Premium resolution, expiry sweep, purchases
    - UsageService: Entitlement + quota combined into a usage summary
    - TableExtractor (abstract): Interface for AI table extraction providers
    - GeminiService: Concrete extractor using Google Gemini Vision
    - ExtractionService: Guest / user extraction workflows and history
    - AuthService: Google / Firebase sign-in and application JWTs
    - UserService: Profile read, rename and account deletion
"""
