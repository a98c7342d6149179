import logging
from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity
from allocation import AllocationEngine, DonorNotFound
from feature_store import FeatureStoreError, get_feature_store
from ledger import DonationLedger
from records import AllocationRequest
from utils import announce_need_update, config_decimal, log_activity

logger = logging.getLogger(__name__)

donations_bp = Blueprint('donations', __name__)


def build_engine(store):
    """ Everything is built per request; nothing is shared between batches. """
    return AllocationEngine(
        store,
        DonationLedger(store),
        min_unit=config_decimal('MIN_DONATION_UNIT', '0'),
        max_amount=config_decimal('MAX_DONATION_AMOUNT', '1000000'),
        on_need_updated=announce_need_update
    )


# ==========================================
#  1. SUBMIT DONATION BATCH
# ==========================================
@donations_bp.route('/api/donations/batch', methods=['POST'])
@jwt_required()
def submit_donations():
    """
    Applies a donor's batch of donations.
    Body: [{"recipientId": 12, "requestedAmount": 500, "kind": "needy"}, ...]
    Invalid items are skipped, never reported one by one.
    """
    donor_email = get_jwt_identity()
    data = request.get_json(silent=True)

    # 1. Validation (accept a bare list or {"donations": [...]})
    if isinstance(data, dict):
        data = data.get('donations')
    if not isinstance(data, list):
        return jsonify({'success': False, 'message': 'Expected a list of donations.'}), 400

    items = [AllocationRequest.from_payload(item) for item in data]

    # 2. Allocate
    store = get_feature_store()
    try:
        result = build_engine(store).allocate(donor_email, items)
    except DonorNotFound:
        return jsonify({'success': False, 'message': 'Donor email not found.'}), 404
    except FeatureStoreError as e:
        logger.error(f"Batch from {donor_email} aborted: {e}")
        return jsonify({'success': False, 'message': 'Record store unavailable.'}), 502

    # 3. Log
    if result.results:
        log_activity(
            donor_email,
            "DONATE_BATCH",
            f"Donated {result.total_applied} EGP across {len(result.results)} recipient(s)"
        )

    return jsonify(result.to_dict()), 200


# ==========================================
#  2. DONATION HISTORY
# ==========================================
@donations_bp.route('/api/donations/history', methods=['GET'])
@jwt_required()
def get_donation_history():
    """ Every donation the current donor has made, read from the donation layer. """
    donor_email = get_jwt_identity()
    ledger = DonationLedger(get_feature_store())

    try:
        donations = ledger.history(donor_email)
    except FeatureStoreError as e:
        logger.error(f"History for {donor_email} unavailable: {e}")
        return jsonify({'error': 'Record store unavailable.'}), 502

    return jsonify({'donations': donations}), 200


# ==========================================
#  3. PENDING RECONCILIATIONS
# ==========================================
@donations_bp.route('/api/donations/pending', methods=['GET'])
@jwt_required()
def get_pending_donations():
    """ Donations recorded but whose recipient's remaining need has not caught up yet. """
    donor_email = get_jwt_identity()
    ledger = DonationLedger(get_feature_store())

    pending = ledger.pending(donor_email=donor_email)
    return jsonify({'pending': [d.to_dict() for d in pending]}), 200
