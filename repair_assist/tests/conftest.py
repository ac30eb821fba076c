from datetime import date, timedelta

import pytest

from repair_assist import db_models
from repair_assist.database import Base, make_engine, make_session_factory


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def add_profile(session_factory):
    def _add(user_id="user-1", is_premium=False, remaining=2, reset_on=None):
        with session_factory() as db:
            db.add(db_models.Profile(
                id=user_id,
                is_premium=is_premium,
                remaining_quota=remaining,
                quota_reset_on=reset_on if reset_on is not None else date.today(),
            ))
            db.commit()
    return _add


@pytest.fixture
def yesterday():
    return date.today() - timedelta(days=1)
