from datetime import datetime, timezone
from decimal import Decimal
from extensions import db


# ==========================================
#  1. DONATION MODEL (Local Journal)
# ==========================================
class Donation(db.Model):
    """
    Local copy of every donation accepted by the donation layer.
    The feature service is the record of truth; this table tracks
    whether the recipient's remaining need has caught up yet.
    """
    __tablename__ = 'donations'

    id = db.Column(db.Integer, primary_key=True)
    donor_email = db.Column(db.String(120), nullable=False, index=True)

    # --- RECIPIENT SNAPSHOT ---
    recipient_kind = db.Column(db.String(20), nullable=False)  # 'charity' or 'needy'
    recipient_id = db.Column(db.Integer, nullable=False)
    recipient_name = db.Column(db.String(150))
    recipient_email = db.Column(db.String(120))
    donation_field = db.Column(db.String(100))

    # --- AMOUNTS ---
    requested_amount = db.Column(db.Numeric(12, 2), nullable=False)
    applied_amount = db.Column(db.Numeric(12, 2), nullable=False)
    need_at_resolution = db.Column(db.Numeric(12, 2), nullable=False)

    # --- COORDINATES (for the map) ---
    donor_x = db.Column(db.Float)
    donor_y = db.Column(db.Float)
    recipient_x = db.Column(db.Float)
    recipient_y = db.Column(db.Float)

    # --- RECONCILIATION ---
    reconciliation_pending = db.Column(db.Boolean, default=True, nullable=False, index=True)
    reconciliation_attempts = db.Column(db.Integer, default=0, nullable=False)
    reconciled_at = db.Column(db.DateTime, nullable=True)

    # --- TIMESTAMPS ---
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    @property
    def applied(self):
        return Decimal(str(self.applied_amount))

    def to_dict(self):
        return {
            'id': self.id,
            'recipientKind': self.recipient_kind,
            'recipientId': self.recipient_id,
            'recipientName': self.recipient_name,
            'appliedAmount': float(self.applied_amount),
            'requestedAmount': float(self.requested_amount),
            'reconciliationPending': self.reconciliation_pending,
            'reconciliationAttempts': self.reconciliation_attempts,
            'createdAt': self.created_at.strftime('%Y-%m-%d %H:%M:%S') if self.created_at else None,
        }


# ==========================================
#  2. AUDIT LOG MODEL
# ==========================================
class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_email = db.Column(db.String(120), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    details = db.Column(db.String(255))
    timestamp = db.Column(db.DateTime, server_default=db.func.now()) # Acts as Created At
