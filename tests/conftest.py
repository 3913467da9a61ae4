# tests/conftest.py
import os

os.environ.setdefault("SCHEDULER_ENABLED", "0")

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker
from carmarket import crud
from carmarket.db import Base, make_engine


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


T0 = datetime(2024, 1, 15, 12, 0, 0)

CAR = {
    "make": "Toyota",
    "model": "Corolla",
    "year": 2018,
    "price": 12000,
    "mileage": 45000,
    "condition": "good",
    "color": "Silver",
    "fuel_type": "Petrol",
    "transmission": "Automatic",
    "body_type": "Sedan",
    "location": "Nicosia",
}


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture
def clock():
    return FakeClock(T0)

@pytest.fixture
def seller(db):
    return crud.create_user(db, username="seller", email="seller@example.com", name="Seller",
                            phone="+35799000001", phone_verified=True)

@pytest.fixture
def buyer(db):
    return crud.create_user(db, username="buyer", email="buyer@example.com", name="Buyer",
                            phone="+35799000002", phone_verified=True)
