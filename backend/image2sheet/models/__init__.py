"""
Image2Sheet Backend — ORM Models
=================================

Importing this package registers every table on `Base.metadata`
(used by `create_tables()` on startup and by the test database fixture).
"""

from image2sheet.models.user import User
from image2sheet.models.subscription import Subscription, SubscriptionStatus
from image2sheet.models.extraction import Extraction

__all__ = ["User", "Subscription", "SubscriptionStatus", "Extraction"]
