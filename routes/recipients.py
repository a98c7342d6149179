import logging
from flask import Blueprint, request, jsonify
from feature_store import FeatureStoreError, get_feature_store
from records import RECIPIENT_KINDS, parse_kind

logger = logging.getLogger(__name__)

recipients_bp = Blueprint('recipients', __name__)


@recipients_bp.route('/api/recipients', methods=['GET'])
def get_recipients():
    """
    Current charities and needy individuals with their remaining need.
    Optional ?kind=charity|needy narrows it to one layer.
    Fully funded recipients are left out unless ?include_funded=true.
    """
    kind_arg = request.args.get('kind')
    include_funded = request.args.get('include_funded', 'false').lower() == 'true'

    if kind_arg:
        kind = parse_kind(kind_arg)
        if kind is None:
            return jsonify({'error': "kind must be 'charity' or 'needy'"}), 400
        kinds = [kind]
    else:
        kinds = list(RECIPIENT_KINDS)

    store = get_feature_store()
    results = []
    try:
        for kind in kinds:
            for recipient in store.fetch_all(kind):
                if not include_funded and recipient.remaining_need <= 0:
                    continue
                results.append(recipient.to_dict())
    except FeatureStoreError as e:
        logger.error(f"Recipient listing failed: {e}")
        return jsonify({'error': 'Record store unavailable.'}), 502

    return jsonify({'recipients': results}), 200
