"""Client for the hosted feature service that stores charities, needies, donors and donations."""

import json
import logging

import requests
from flask import current_app

from records import (
    EMAIL_FIELDS,
    ID_FIELD,
    NEED_FIELD,
    RECIPIENT_KINDS,
    Donor,
    Recipient,
    RecordClass,
)

logger = logging.getLogger(__name__)


class FeatureStoreError(Exception):
    """A query against the feature service failed (transport, HTTP status or body)."""


def escape_where_value(value):
    return str(value).replace("'", "''")


class FeatureStoreClient:
    """
    Thin wrapper over the feature service REST endpoints:
    `<layer>/query`, `<layer>/addFeatures` and `<layer>/updateFeatures`.

    Reads raise FeatureStoreError. Writes never raise for a rejected
    feature; they return per-item success flags that callers must check.
    Nothing here retries or caches.
    """

    def __init__(self, layer_urls, donations_url=None, timeout=15, session=None):
        self.layer_urls = dict(layer_urls)
        self.donations_url = donations_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": "ataa-backend/1.0"
        })

    # ==========================================
    #  1. LOW LEVEL
    # ==========================================
    def layer_url(self, record_class):
        url = self.layer_urls.get(record_class)
        if not url:
            raise FeatureStoreError(f"No service URL configured for {record_class.value} records")
        return url.rstrip('/')

    def query(self, layer_url, where='1=1', return_geometry=True):
        """Runs a query and returns the raw feature list."""
        params = {
            'where': where,
            'outFields': '*',
            'returnGeometry': 'true' if return_geometry else 'false',
            'f': 'json',
        }
        try:
            resp = self.session.get(f"{layer_url}/query", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise FeatureStoreError(f"Query to {layer_url} failed: {e}") from e

        if resp.status_code != 200:
            raise FeatureStoreError(f"Query to {layer_url} returned status {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise FeatureStoreError(f"Query to {layer_url} returned invalid JSON") from e

        # The service reports most failures as HTTP 200 with an "error" object
        if not isinstance(body, dict) or 'error' in body:
            error = body.get('error') if isinstance(body, dict) else body
            raise FeatureStoreError(f"Query to {layer_url} was rejected: {error}")

        features = body.get('features') or []
        if not isinstance(features, list):
            raise FeatureStoreError(f"Query to {layer_url} returned a malformed feature list")
        return features

    def _post_edits(self, url, features, results_key):
        expected = len(features)
        form = {'features': json.dumps(features), 'f': 'json'}
        try:
            resp = self.session.post(url, data=form, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Edit request to {url} failed: {e}")
            return [False] * expected

        if resp.status_code != 200:
            logger.error(f"Edit request to {url} returned status {resp.status_code}: {resp.text}")
            return [False] * expected

        try:
            body = resp.json()
        except ValueError:
            logger.error(f"Edit request to {url} returned invalid JSON: {resp.text}")
            return [False] * expected

        if not isinstance(body, dict) or 'error' in body:
            logger.error(f"Edit request to {url} was rejected: {body}")
            return [False] * expected

        results = body.get(results_key) or []
        flags = [isinstance(r, dict) and r.get('success') is True for r in results]
        # Missing entries count as failures
        flags.extend([False] * (expected - len(flags)))
        return flags[:expected]

    def add_features(self, layer_url, features):
        """Adds features to a layer. Returns one success flag per feature."""
        return self._post_edits(f"{layer_url.rstrip('/')}/addFeatures", features, 'addResults')

    def update_features(self, layer_url, attributes_list):
        """Updates features by objectid. Returns one success flag per feature."""
        features = [{'attributes': attrs} for attrs in attributes_list]
        return self._post_edits(f"{layer_url.rstrip('/')}/updateFeatures", features, 'updateResults')

    # ==========================================
    #  2. RECORD LEVEL
    # ==========================================
    @staticmethod
    def to_record(record_class, feature):
        if record_class == RecordClass.DONOR:
            return Donor.from_feature(feature)
        return Recipient.from_feature(record_class, feature)

    def fetch_all(self, record_class):
        """Point-in-time snapshot of every record in a layer."""
        features = self.query(self.layer_url(record_class))
        records = []
        for feature in features:
            if not isinstance(feature, dict):
                continue
            record = self.to_record(record_class, feature)
            if record is not None:
                records.append(record)
        logger.debug(f"Fetched {len(records)} {record_class.value} records")
        return records

    def find_by_key(self, record_class, key):
        """Looks a record up by its contact email. Returns None if there is no match."""
        if not key:
            return None
        return self._first(record_class, f"{EMAIL_FIELDS[record_class]}='{escape_where_value(key)}'")

    def find_by_id(self, record_class, object_id):
        return self._first(record_class, f"{ID_FIELD}={int(object_id)}")

    def _first(self, record_class, where):
        for feature in self.query(self.layer_url(record_class), where=where):
            if isinstance(feature, dict):
                record = self.to_record(record_class, feature)
                if record is not None:
                    return record
        return None

    def update_remaining_need_by_id(self, record_class, object_id, new_value):
        if record_class not in RECIPIENT_KINDS:
            raise ValueError(f"{record_class.value} records have no remaining need to update")
        try:
            url = self.layer_url(record_class)
        except FeatureStoreError as e:
            logger.error(str(e))
            return False

        flags = self.update_features(url, [{ID_FIELD: object_id, NEED_FIELD: float(new_value)}])
        ok = all(flags)
        if ok:
            logger.info(f"Remaining need for {record_class.value} {object_id} set to {new_value}")
        else:
            logger.error(f"Update failed for {record_class.value} {object_id}")
        return ok

    def update_remaining_need(self, record_class, key, new_value):
        """
        Read-verify-then-write: the object id is re-resolved from the email
        right before the update, because ids are not guaranteed stable
        between calls.
        """
        try:
            record = self.find_by_key(record_class, key)
        except FeatureStoreError as e:
            logger.warning(f"Could not re-resolve {record_class.value} {key}: {e}")
            return False

        if record is None or getattr(record, 'object_id', None) is None:
            logger.warning(f"No {record_class.value} record found for {key}; update skipped")
            return False
        return self.update_remaining_need_by_id(record_class, record.object_id, new_value)


def get_feature_store():
    """Builds a client from the current app's config. One per request."""
    config = current_app.config
    return FeatureStoreClient(
        layer_urls={
            RecordClass.CHARITY: config.get('CHARITIES_SERVICE_URL'),
            RecordClass.NEEDY: config.get('NEEDIES_SERVICE_URL'),
            RecordClass.DONOR: config.get('DONORS_SERVICE_URL'),
        },
        donations_url=config.get('DONATIONS_LAYER_URL'),
        timeout=config.get('FEATURE_SERVICE_TIMEOUT', 15),
    )
