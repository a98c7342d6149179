import json
import pytest
import requests
from decimal import Decimal
from unittest.mock import MagicMock
from feature_store import FeatureStoreClient, FeatureStoreError
from records import RecordClass

CHARITIES_URL = "https://gis.test/charities/FeatureServer/0"
NEEDIES_URL = "https://gis.test/needies/FeatureServer/0"
DONATIONS_URL = "https://gis.test/donations/FeatureServer/0"

# ==========================================
#  HELPERS
# ==========================================

def fake_response(body=None, status=200, invalid_json=False):
    resp = MagicMock()
    resp.status_code = status
    resp.text = json.dumps(body) if body is not None else ""
    if invalid_json:
        resp.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        resp.json.return_value = body
    return resp

@pytest.fixture
def session():
    return MagicMock()

@pytest.fixture
def store_client(session):
    return FeatureStoreClient(
        layer_urls={RecordClass.CHARITY: CHARITIES_URL, RecordClass.NEEDY: NEEDIES_URL},
        donations_url=DONATIONS_URL,
        timeout=5,
        session=session,
    )

NEEDY_FEATURES = {
    "features": [
        {
            "attributes": {"objectid": 3, "full_name": "Mona", "type_of_need": "medical",
                           "how_much_do_you_need": "1500.5", "email": "mona@test.eg"},
            "geometry": {"x": 31.23, "y": 30.04},
        },
        {
            "attributes": {"objectid": "4", "full_name": "Omar", "type_of_need": "food",
                           "how_much_do_you_need": None, "email": ""},
        },
        {"attributes": {"full_name": "No id, ignored"}},
    ]
}

# ==========================================
#  1. QUERIES
# ==========================================

def test_fetch_all_parses_snapshot(store_client, session):
    session.get.return_value = fake_response(NEEDY_FEATURES)

    needies = store_client.fetch_all(RecordClass.NEEDY)

    assert [n.object_id for n in needies] == [3, 4]
    mona, omar = needies
    assert mona.kind == RecordClass.NEEDY
    assert mona.remaining_need == Decimal("1500.5")
    assert mona.category == "medical"
    assert (mona.x, mona.y) == (31.23, 30.04)
    # Blank email and missing need are tolerated
    assert omar.email is None
    assert omar.remaining_need == Decimal("0")
    assert omar.x is None

    url = session.get.call_args[0][0]
    params = session.get.call_args[1]["params"]
    assert url == f"{NEEDIES_URL}/query"
    assert params["where"] == "1=1"
    assert params["returnGeometry"] == "true"
    assert session.get.call_args[1]["timeout"] == 5

def test_query_error_body_raises(store_client, session):
    """The service reports failures as HTTP 200 + an error object."""
    session.get.return_value = fake_response({"error": {"code": 400, "message": "Invalid query"}})

    with pytest.raises(FeatureStoreError):
        store_client.fetch_all(RecordClass.CHARITY)

def test_query_http_error_raises(store_client, session):
    session.get.return_value = fake_response({}, status=503)

    with pytest.raises(FeatureStoreError):
        store_client.fetch_all(RecordClass.CHARITY)

def test_query_transport_error_raises(store_client, session):
    session.get.side_effect = requests.ConnectionError("boom")

    with pytest.raises(FeatureStoreError):
        store_client.fetch_all(RecordClass.CHARITY)

def test_query_invalid_json_raises(store_client, session):
    session.get.return_value = fake_response(invalid_json=True)

    with pytest.raises(FeatureStoreError):
        store_client.fetch_all(RecordClass.CHARITY)

def test_missing_layer_url_raises(store_client):
    with pytest.raises(FeatureStoreError):
        store_client.fetch_all(RecordClass.DONOR)

def test_find_by_key_escapes_quotes(store_client, session):
    session.get.return_value = fake_response({"features": []})

    assert store_client.find_by_key(RecordClass.CHARITY, "o'brien@test.eg") is None

    params = session.get.call_args[1]["params"]
    assert params["where"] == "enter_your_e_mail='o''brien@test.eg'"

def test_find_by_key_without_key_skips_query(store_client, session):
    assert store_client.find_by_key(RecordClass.CHARITY, "") is None
    assert not session.get.called

# ==========================================
#  2. EDITS
# ==========================================

def test_add_features_reports_per_item_success(store_client, session):
    session.post.return_value = fake_response({"addResults": [{"objectId": 9, "success": True}]})

    flags = store_client.add_features(DONATIONS_URL, [{"attributes": {"donation_amount": 10}}])

    assert flags == [True]
    url = session.post.call_args[0][0]
    form = session.post.call_args[1]["data"]
    assert url == f"{DONATIONS_URL}/addFeatures"
    assert form["f"] == "json"
    assert json.loads(form["features"]) == [{"attributes": {"donation_amount": 10}}]

@pytest.mark.parametrize("body", [
    {"addResults": [{"success": False, "error": {"code": 1000}}]},
    {"error": {"code": 498, "message": "Invalid token"}},
    {"addResults": []},
    {},
])
def test_add_features_non_success_bodies_are_failures(store_client, session, body):
    session.post.return_value = fake_response(body)

    assert store_client.add_features(DONATIONS_URL, [{"attributes": {}}]) == [False]

def test_add_features_transport_error_is_failure_not_exception(store_client, session):
    session.post.side_effect = requests.Timeout("slow")

    assert store_client.add_features(DONATIONS_URL, [{"attributes": {}}, {"attributes": {}}]) == [False, False]

def test_update_remaining_need_re_resolves_id_then_writes(store_client, session):
    session.get.return_value = fake_response({
        "features": [{"attributes": {"objectid": 42, "charity_name": "Hope",
                                     "enter_your_e_mail": "hope@charity.eg", "how_much_do_you_need": 900}}]
    })
    session.post.return_value = fake_response({"updateResults": [{"objectId": 42, "success": True}]})

    assert store_client.update_remaining_need(RecordClass.CHARITY, "hope@charity.eg", Decimal("0")) is True

    url = session.post.call_args[0][0]
    sent = json.loads(session.post.call_args[1]["data"]["features"])
    assert url == f"{CHARITIES_URL}/updateFeatures"
    assert sent == [{"attributes": {"objectid": 42, "how_much_do_you_need": 0.0}}]

def test_update_remaining_need_unknown_email_does_not_write(store_client, session):
    session.get.return_value = fake_response({"features": []})

    assert store_client.update_remaining_need(RecordClass.NEEDY, "gone@test.eg", Decimal("5")) is False
    assert not session.post.called

def test_update_remaining_need_read_failure_is_not_fatal(store_client, session):
    session.get.side_effect = requests.ConnectionError("down")

    assert store_client.update_remaining_need(RecordClass.NEEDY, "mona@test.eg", Decimal("5")) is False

def test_update_by_id_rejected_returns_false(store_client, session):
    session.post.return_value = fake_response({"updateResults": [{"objectId": 4, "success": False}]})

    assert store_client.update_remaining_need_by_id(RecordClass.NEEDY, 4, Decimal("10")) is False
