"""
Rate/entitlement gate.

Premium users are always allowed. For everyone else a single conditional
UPDATE both applies the lazy daily reset and consumes one scan, so two
concurrent requests can never push the counter below zero.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Union

from sqlalchemy import and_, case, false, not_, or_, update
from sqlalchemy.orm import sessionmaker

from .config import DEFAULT_DAILY_SCAN_LIMIT
from .db_models import Profile

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED = "quota_exceeded"
PROFILE_NOT_FOUND = "profile_not_found"


@dataclass
class Allowed:
    remaining: Optional[int] = None  # None for premium users
    allowed: bool = True


@dataclass
class Denied:
    reason: str
    allowed: bool = False


GateDecision = Union[Allowed, Denied]


@dataclass
class EntitlementStatus:
    is_premium: bool
    remaining_quota: int
    daily_limit: int


class EntitlementGate:
    def __init__(
        self,
        session_factory: sessionmaker,
        daily_limit: int = DEFAULT_DAILY_SCAN_LIMIT,
        today: Callable[[], date] = date.today,
    ):
        self.session_factory = session_factory
        self.daily_limit = daily_limit
        self.today = today

    def check_and_consume(self, user_id: str) -> GateDecision:
        today = self.today()
        with self.session_factory() as db:
            profile = db.get(Profile, user_id)
            if profile is None:
                logger.warning(f"No profile for user {user_id}")
                return Denied(PROFILE_NOT_FOUND)
            if profile.is_premium:
                return Allowed()

            stale = or_(Profile.quota_reset_on.is_(None), Profile.quota_reset_on < today)
            if self.daily_limit > 0:
                can_consume = or_(stale, Profile.remaining_quota > 0)
            else:
                can_consume = and_(not_(stale), Profile.remaining_quota > 0)

            result = db.execute(
                update(Profile)
                .where(Profile.id == user_id, Profile.is_premium == false(), can_consume)
                .values(
                    remaining_quota=case(
                        (stale, self.daily_limit - 1),
                        else_=Profile.remaining_quota - 1,
                    ),
                    quota_reset_on=today,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount != 1:
                logger.info(f"Scan quota exhausted for user {user_id}")
                return Denied(QUOTA_EXCEEDED)

            db.expire_all()
            remaining = db.get(Profile, user_id).remaining_quota
        return Allowed(remaining=remaining)

    def status(self, user_id: str) -> Optional[EntitlementStatus]:
        """Read-only view with the lazy reset applied in memory."""
        with self.session_factory() as db:
            profile = db.get(Profile, user_id)
            if profile is None:
                return None
            remaining = profile.remaining_quota
            if profile.quota_reset_on is None or profile.quota_reset_on < self.today():
                remaining = self.daily_limit
            return EntitlementStatus(
                is_premium=profile.is_premium,
                remaining_quota=max(remaining, 0),
                daily_limit=self.daily_limit,
            )
