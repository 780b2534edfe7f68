"""
MedRefer - Offline-first data layer for medical referral management.

Local SQLite persistence for patients, specialists, referrals and billing,
with a queued offline synchronization service and a security audit trail.
"""

__version__ = "1.0.0"
__author__ = "MedRefer Team"

from medrefer.core.config import MedReferConfig
from medrefer.core.session import Session

__all__ = ["MedReferConfig", "Session", "__version__"]
