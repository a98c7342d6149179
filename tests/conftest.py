import sys
import os
import dataclasses
import re
from decimal import Decimal
import pytest

# 1. Add the parent directory to Python's path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# 2. NOW import from app
from app import create_app
from extensions import db
from records import Donor, Recipient, RecordClass


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "JWT_SECRET_KEY": "test-secret",
        "CHARITIES_SERVICE_URL": "https://gis.test/charities/FeatureServer/0",
        "NEEDIES_SERVICE_URL": "https://gis.test/needies/FeatureServer/0",
        "DONORS_SERVICE_URL": "https://gis.test/donors/FeatureServer/0",
        "DONATIONS_LAYER_URL": "https://gis.test/donations/FeatureServer/0",
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

@pytest.fixture
def client(app):
    return app.test_client()


# ==========================================
#  IN-MEMORY FEATURE SERVICE
# ==========================================
class FakeFeatureStore:
    """
    Stands in for FeatureStoreClient. Snapshots are copies, so the engine
    only ever sees stale data the way it would against the real service.
    """

    def __init__(self):
        self.donations_url = "https://gis.test/donations/FeatureServer/0"
        self.records = {RecordClass.CHARITY: {}, RecordClass.NEEDY: {}}
        self.donors = {}
        self.added = []
        self.updates = []
        self.reject_adds = set()      # 0-based index of addFeatures calls to reject
        self.fail_updates = False
        self.reject_updates = set()   # 0-based index of need updates to reject
        self.fetch_error = None
        self.add_calls = 0
        self.update_calls = 0

    # --- seeding ---
    def add_recipient(self, kind, object_id, need, email=None, name=None, category=None, x=31.2, y=30.0):
        recipient = Recipient(
            kind=kind, object_id=object_id, name=name or f"{kind.value}-{object_id}",
            email=email, category=category, remaining_need=Decimal(str(need)), x=x, y=y
        )
        self.records[kind][object_id] = recipient
        return recipient

    def add_donor(self, email, x=31.0, y=30.1):
        donor = Donor(email=email, object_id=len(self.donors) + 1, name="Donor", x=x, y=y)
        self.donors[email] = donor
        return donor

    def need_of(self, kind, object_id):
        return self.records[kind][object_id].remaining_need

    # --- client interface ---
    def fetch_all(self, record_class):
        if self.fetch_error:
            raise self.fetch_error
        return [dataclasses.replace(r) for r in self.records[record_class].values()]

    def find_by_key(self, record_class, key):
        if self.fetch_error:
            raise self.fetch_error
        if record_class == RecordClass.DONOR:
            return self.donors.get(key)
        for r in self.records[record_class].values():
            if r.email and r.email == key:
                return dataclasses.replace(r)
        return None

    def find_by_id(self, record_class, object_id):
        r = self.records[record_class].get(object_id)
        return dataclasses.replace(r) if r else None

    def add_features(self, layer_url, features):
        index = self.add_calls
        self.add_calls += 1
        if index in self.reject_adds:
            return [False] * len(features)
        self.added.extend(features)
        return [True] * len(features)

    def update_remaining_need(self, record_class, key, new_value):
        r = self.find_by_key(record_class, key)
        if r is None:
            return False
        return self.update_remaining_need_by_id(record_class, r.object_id, new_value)

    def update_remaining_need_by_id(self, record_class, object_id, new_value):
        index = self.update_calls
        self.update_calls += 1
        if self.fail_updates or index in self.reject_updates or object_id not in self.records[record_class]:
            return False
        self.records[record_class][object_id].remaining_need = Decimal(str(new_value))
        self.updates.append((record_class, object_id, Decimal(str(new_value))))
        return True

    def query(self, layer_url, where='1=1', return_geometry=True):
        match = re.match(r"donor_email='(.*)'", where)
        email = match.group(1).replace("''", "'") if match else None
        return [f for f in self.added if email is None or f['attributes']['donor_email'] == email]


@pytest.fixture
def store():
    return FakeFeatureStore()
