from datetime import date
from types import SimpleNamespace

import pytest

from workforce import create_app, db
from workforce.models import ADMIN, MEN_ROOM, SUPERADMIN, WOMEN_ROOM, AppUser, Farm, Room, StockItem

TODAY = date(2024, 6, 1)


class RecordingSink:
    def __init__(self):
        self.delivered = []

    def deliver(self, events):
        self.delivered.extend(events)


@pytest.fixture()
def app():
    app = create_app(testing=True)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def sink(app):
    recorder = RecordingSink()
    app.extensions["notification_sink"] = recorder
    return recorder


@pytest.fixture()
def seeded(app):
    """Farm A with rooms R1 (men, 2 places) and R2 (women), farm B with R1 (men)."""
    farm_a = Farm(name="Farm A")
    farm_b = Farm(name="Farm B")
    db.session.add_all([farm_a, farm_b])
    db.session.flush()

    central = AppUser(name="Central", role=SUPERADMIN)
    admin_a = AppUser(name="Admin A", role=ADMIN, farm_id=farm_a.id)
    admin_b = AppUser(name="Admin B", role=ADMIN, farm_id=farm_b.id)
    db.session.add_all([central, admin_a, admin_b])

    r1 = Room(farm_id=farm_a.id, number="R1", gender_category=MEN_ROOM, sector="North", total_capacity=2, occupant_ids=[])
    r2 = Room(farm_id=farm_a.id, number="R2", gender_category=WOMEN_ROOM, sector="South", total_capacity=2, occupant_ids=[])
    b1 = Room(farm_id=farm_b.id, number="R1", gender_category=MEN_ROOM, sector="East", total_capacity=4, occupant_ids=[])
    db.session.add_all([r1, r2, b1])

    db.session.add(StockItem(farm_id=farm_a.id, item_name="Matelas", quantity=5))
    db.session.add(StockItem(farm_id=farm_a.id, item_name="Armoire", quantity=0))
    db.session.commit()

    return SimpleNamespace(
        farm_a=farm_a.id,
        farm_b=farm_b.id,
        central=central.id,
        admin_a=admin_a.id,
        admin_b=admin_b.id,
        r1=r1.id,
        r2=r2.id,
        b1=b1.id,
    )


def worker_data(farm_id, **overrides):
    data = {
        "name": "Youssef Amrani",
        "national_id": "X1",
        "gender": "male",
        "farm_id": farm_id,
        "entry_date": "2024-01-01",
    }
    data.update(overrides)
    return data
