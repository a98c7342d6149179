import logging
from decimal import Decimal
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from models import AuditLog, db
from extensions import socketio

logger = logging.getLogger(__name__)


def log_activity(actor_email, action, details):
    try:
        new_log = AuditLog(actor_email=actor_email, action=action, details=details[:255])
        db.session.add(new_log)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Audit logging failed: {e}") # Don't crash the app if logging fails


def announce_need_update(kind, recipient_id, remaining_need):
    """Tells connected map clients that a recipient's remaining need changed."""
    try:
        socketio.emit('need_updated', {
            'kind': kind.value,
            'id': recipient_id,
            'remainingNeed': float(remaining_need)
        })
    except Exception as e:
        # Socket delivery is best effort; the update itself already landed
        logger.warning(f"Could not emit need_updated for {kind.value} {recipient_id}: {e}")


def config_decimal(key, default):
    value = current_app.config.get(key, default)
    return Decimal(str(value if value is not None else default))
