"""
Donation allocation.

A donor submits a batch of (recipient, amount) items. Each item is capped
at the recipient's remaining need, written to the donation ledger, and
then the recipient's remaining need is pushed back to the feature
service. The ledger write is the commit point: a failed need update is
left for the reconciler and never undoes the donation.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from feature_store import FeatureStoreError
from records import RECIPIENT_KINDS, DonationRecord, RecordClass, parse_kind

logger = logging.getLogger(__name__)

DEFAULT_MAX_AMOUNT = Decimal('1000000')


class DonorNotFound(Exception):
    def __init__(self, email):
        super().__init__(f"Donor email not found: {email}")
        self.email = email


# ==========================================
#  1. RESULTS
# ==========================================
@dataclass
class AllocationItemResult:
    kind: RecordClass
    recipient_id: int
    applied_amount: Decimal
    requested_amount: Decimal

    def to_dict(self):
        return {
            'id': self.recipient_id,
            'actualAmount': float(self.applied_amount),
            'requestedAmount': float(self.requested_amount),
        }


@dataclass
class AllocationResult:
    results: list = field(default_factory=list)
    total_applied: Decimal = Decimal('0')

    def add(self, item):
        self.results.append(item)
        self.total_applied += item.applied_amount

    def to_dict(self):
        return {
            'success': True,
            'updated': [item.to_dict() for item in self.results],
            'totalDonated': float(self.total_applied),
        }


# ==========================================
#  2. RECIPIENT RESOLVER
# ==========================================
def resolve_recipient(kind, recipient_id, charities, needies):
    """
    Finds a recipient strictly inside the snapshot its kind tag names.
    Charity and needy ids come from separate layers and overlap, so a
    miss never falls through to the other snapshot.
    """
    kind = parse_kind(kind)
    if kind == RecordClass.CHARITY:
        snapshot = charities
    elif kind == RecordClass.NEEDY:
        snapshot = needies
    else:
        return None

    if recipient_id is None:
        return None
    for recipient in snapshot:
        if recipient.kind == kind and recipient.object_id == recipient_id:
            return recipient
    return None


# ==========================================
#  3. REMAINING NEED WRITE-BACK
# ==========================================
def push_remaining_need(store, recipient, new_need):
    # Records without a contact email can only be addressed by the snapshot id
    if recipient.email:
        return store.update_remaining_need(recipient.kind, recipient.email, new_need)
    return store.update_remaining_need_by_id(recipient.kind, recipient.object_id, new_need)


# ==========================================
#  4. ALLOCATION ENGINE
# ==========================================
class AllocationEngine:
    """
    Runs one donor's batch, strictly in input order.

    Remaining need is read once per batch from the snapshot taken at the
    start. Two batches racing on the same recipient can both see the same
    figure and over-allocate; nothing at the feature service prevents it,
    and the next donation against a fully funded recipient applies zero.
    """

    def __init__(self, store, ledger, min_unit=Decimal('0'), max_amount=DEFAULT_MAX_AMOUNT, on_need_updated=None):
        self.store = store
        self.ledger = ledger
        self.min_unit = Decimal(str(min_unit))
        self.max_amount = Decimal(str(max_amount))
        self.on_need_updated = on_need_updated

    def is_valid_amount(self, amount):
        if amount is None:
            return False
        return amount > 0 and amount > self.min_unit and amount <= self.max_amount

    def allocate(self, donor_email, requests):
        # 1. The donor must exist before anything is touched
        donor = self.store.find_by_key(RecordClass.DONOR, donor_email)
        if donor is None:
            raise DonorNotFound(donor_email)

        # 2. One snapshot per batch (FeatureStoreError here is fatal)
        charities = self.store.fetch_all(RecordClass.CHARITY)
        needies = self.store.fetch_all(RecordClass.NEEDY)

        # 3. Items, in order
        result = AllocationResult()
        for request in requests:
            item = self._apply(donor, request, charities, needies)
            if item is not None:
                result.add(item)

        logger.info(
            f"Batch from {donor.email}: {len(result.results)}/{len(requests)} items applied, "
            f"total {result.total_applied}"
        )
        return result

    def _apply(self, donor, request, charities, needies):
        requested = request.requested_amount
        if not self.is_valid_amount(requested):
            return None

        recipient = resolve_recipient(request.kind, request.recipient_id, charities, needies)
        if recipient is None:
            logger.debug(f"Recipient {request.kind} {request.recipient_id} not in snapshot; skipped")
            return None

        applied = min(requested, recipient.remaining_need)
        if applied <= 0:
            return None

        record = DonationRecord.for_allocation(donor, recipient, requested, applied)
        if not self.ledger.append(record):
            return None

        new_need = record.new_remaining_need
        updated = push_remaining_need(self.store, recipient, new_need)
        if not updated:
            logger.warning(
                f"Donation to {recipient.kind.value} {recipient.object_id} recorded, "
                f"but remaining need was not updated; left for reconciliation"
            )
        self.ledger.settle_record(record, updated)

        if updated:
            # Later items in this batch see what this one left. A failed
            # update stays pending and is taken off by the reconciler.
            recipient.remaining_need = new_need
            if self.on_need_updated is not None:
                self.on_need_updated(recipient.kind, recipient.object_id, new_need)

        return AllocationItemResult(
            kind=recipient.kind,
            recipient_id=recipient.object_id,
            applied_amount=applied,
            requested_amount=requested,
        )


# ==========================================
#  5. RECONCILIATION (retry pending need updates)
# ==========================================
def reconcile_pending(store, ledger, limit=50, max_attempts=None, on_need_updated=None):
    """
    Retries the remaining-need update for journaled donations still flagged
    pending. The recipient is re-read first and the applied amount taken off
    its current figure. Returns the number of rows settled.
    """
    settled = 0
    for entry in ledger.pending(limit=limit, max_attempts=max_attempts):
        kind = parse_kind(entry.recipient_kind)
        if kind not in RECIPIENT_KINDS:
            continue

        try:
            if entry.recipient_email:
                recipient = store.find_by_key(kind, entry.recipient_email)
            else:
                recipient = store.find_by_id(kind, entry.recipient_id)
        except FeatureStoreError as e:
            logger.warning(f"Reconciler could not read {kind.value} {entry.recipient_id}: {e}")
            ledger.settle(entry, False)
            continue

        if recipient is None:
            logger.warning(f"Reconciler: {kind.value} {entry.recipient_id} no longer exists")
            ledger.settle(entry, False)
            continue

        new_need = max(Decimal('0'), recipient.remaining_need - entry.applied)
        ok = store.update_remaining_need_by_id(kind, recipient.object_id, new_need)
        ledger.settle(entry, ok)
        if ok:
            settled += 1
            if on_need_updated is not None:
                on_need_updated(kind, recipient.object_id, new_need)

    if settled:
        logger.info(f"Reconciler settled {settled} pending donation(s)")
    return settled
