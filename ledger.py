import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from feature_store import FeatureStoreError, escape_where_value
from models import Donation
from records import clean_text, to_float, to_int

logger = logging.getLogger(__name__)


class DonationLedger:
    """
    Append-only donation ledger.

    The donation layer of the feature service is the commit point. Every
    accepted record is also journaled locally with a reconciliation flag
    so recipients whose remaining need was not updated can be retried
    later without re-processing the donation.
    """

    def __init__(self, store, session=None):
        self.store = store
        self.session = session or db.session

    # ==========================================
    #  1. APPEND
    # ==========================================
    def append(self, record):
        """Writes one DonationRecord. Returns True only if the service accepted it."""
        if not self.store.donations_url:
            logger.error("DONATIONS_LAYER_URL is not configured; donation not recorded")
            return False

        flags = self.store.add_features(self.store.donations_url, [record.to_feature()])
        if not flags or not all(flags):
            logger.warning(
                f"Donation layer rejected {record.applied_amount} from {record.donor_email} "
                f"to {record.recipient_kind.value} {record.recipient_id}"
            )
            return False

        self._journal(record)
        return True

    def _journal(self, record):
        entry = Donation(
            donor_email=record.donor_email,
            recipient_kind=record.recipient_kind.value,
            recipient_id=record.recipient_id,
            recipient_name=record.recipient_name,
            recipient_email=record.recipient_email,
            donation_field=record.recipient_category,
            requested_amount=record.requested_amount,
            applied_amount=record.applied_amount,
            need_at_resolution=record.need_at_resolution,
            donor_x=record.donor_x,
            donor_y=record.donor_y,
            recipient_x=record.recipient_x,
            recipient_y=record.recipient_y,
            reconciliation_pending=True,
            reconciliation_attempts=0,
            created_at=record.donated_at,
        )
        try:
            self.session.add(entry)
            self.session.commit()
            record.entry_id = entry.id
        except SQLAlchemyError as e:
            # The donation layer already has it; losing the journal row only
            # means the reconciler cannot see this one.
            self.session.rollback()
            logger.error(f"Could not journal donation for {record.donor_email}: {e}")

    # ==========================================
    #  2. RECONCILIATION BOOKKEEPING
    # ==========================================
    def settle(self, entry, succeeded):
        """Counts one remaining-need update attempt against a journal row."""
        entry.reconciliation_attempts = (entry.reconciliation_attempts or 0) + 1
        if succeeded:
            entry.reconciliation_pending = False
            entry.reconciled_at = datetime.now(timezone.utc)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Could not update reconciliation state of donation {entry.id}: {e}")

    def settle_record(self, record, succeeded):
        record.reconciliation_pending = not succeeded
        if record.entry_id is None:
            return
        entry = self.session.get(Donation, record.entry_id)
        if entry is not None:
            self.settle(entry, succeeded)

    def pending(self, donor_email=None, limit=None, max_attempts=None):
        query = Donation.query.filter_by(reconciliation_pending=True)
        if donor_email:
            query = query.filter_by(donor_email=donor_email)
        if max_attempts:
            query = query.filter(Donation.reconciliation_attempts < max_attempts)
        query = query.order_by(Donation.created_at.asc(), Donation.id.asc())
        if limit:
            query = query.limit(limit)
        return query.all()

    # ==========================================
    #  3. HISTORY (read back from the service)
    # ==========================================
    def history(self, donor_email):
        """All donations a donor has made, newest first, as stored in the donation layer."""
        if not self.store.donations_url:
            raise FeatureStoreError("No service URL configured for donation records")
        where = f"donor_email='{escape_where_value(donor_email)}'"
        features = self.store.query(self.store.donations_url, where=where, return_geometry=False)

        results = []
        for feature in features:
            attributes = feature.get('attributes') if isinstance(feature, dict) else None
            if not isinstance(attributes, dict):
                continue
            stamp = to_int(attributes.get('donation_date'))
            results.append({
                'recipientName': clean_text(attributes.get('recipient_name')),
                'recipientEmail': clean_text(attributes.get('recipient_email')),
                'field': clean_text(attributes.get('donation_field')),
                'amount': to_float(attributes.get('donation_amount')) or 0.0,
                'date': format_stamp(stamp),
                '_stamp': stamp or 0,
            })

        results.sort(key=lambda x: x['_stamp'], reverse=True)
        for item in results:
            del item['_stamp']
        return results


def format_stamp(stamp):
    """Epoch milliseconds as a UTC string; None when missing or out of range."""
    if not stamp:
        return None
    try:
        return datetime.fromtimestamp(stamp / 1000, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    except (OverflowError, OSError, ValueError):
        logger.warning(f"Ignoring out-of-range donation_date {stamp}")
        return None
