from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional


# ==========================================
#  1. RECORD CLASSES (Feature Service Layers)
# ==========================================
class RecordClass(str, Enum):
    CHARITY = 'charity'
    NEEDY = 'needy'
    DONOR = 'donor'


# Recipients are the two record classes a donation can target
RECIPIENT_KINDS = (RecordClass.CHARITY, RecordClass.NEEDY)

# Attribute names differ per layer (they come from the survey forms
# that feed each layer)
NAME_FIELDS = {
    RecordClass.CHARITY: 'charity_name',
    RecordClass.NEEDY: 'full_name',
    RecordClass.DONOR: 'full_name',
}
EMAIL_FIELDS = {
    RecordClass.CHARITY: 'enter_your_e_mail',
    RecordClass.NEEDY: 'email',
    RecordClass.DONOR: 'enter_your_e_mail',
}
CATEGORY_FIELDS = {
    RecordClass.CHARITY: 'charity_sector',
    RecordClass.NEEDY: 'type_of_need',
}
NEED_FIELD = 'how_much_do_you_need'
ID_FIELD = 'objectid'


def parse_kind(value):
    """Maps a kind tag ('charity' / 'needy') to a RecipientKind, or None."""
    if isinstance(value, RecordClass):
        return value if value in RECIPIENT_KINDS else None
    if not isinstance(value, str):
        return None
    try:
        kind = RecordClass(value.strip().lower())
    except ValueError:
        return None
    return kind if kind in RECIPIENT_KINDS else None


# ==========================================
#  2. TOLERANT PARSERS
# ==========================================
def to_decimal(value):
    """
    Numbers come back from the feature service as ints, floats,
    numeric strings or null. Anything unparseable is treated as missing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


# Object ids never come close to this; anything past it is not an id
MAX_INT_DIGITS = 18

CENT = Decimal('0.01')


def to_int(value):
    number = to_decimal(value)
    if number is None or number.adjusted() >= MAX_INT_DIGITS:
        return None
    if number != number.to_integral_value():
        return None
    return int(number)


def to_money(value):
    """Amounts are kept to the cent, the same scale the journal stores."""
    number = to_decimal(value)
    if number is None:
        return None
    try:
        return number.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None


def to_float(value):
    number = to_decimal(value)
    return float(number) if number is not None else None


def clean_text(value):
    """Empty strings are the same as no value at all."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ==========================================
#  3. RECIPIENT (Charity | Needy)
# ==========================================
@dataclass
class Recipient:
    """A charity or needy individual with an outstanding monetary need."""
    kind: RecordClass
    object_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None
    remaining_need: Decimal = Decimal('0')
    x: Optional[float] = None
    y: Optional[float] = None

    @classmethod
    def from_feature(cls, kind, feature):
        """Builds a Recipient from a feature's attributes + geometry. Returns None without an id."""
        attributes = feature.get('attributes') or {}
        geometry = feature.get('geometry') or {}

        object_id = to_int(attributes.get(ID_FIELD))
        if object_id is None:
            return None

        need = to_money(attributes.get(NEED_FIELD))
        return cls(
            kind=kind,
            object_id=object_id,
            name=clean_text(attributes.get(NAME_FIELDS[kind])),
            email=clean_text(attributes.get(EMAIL_FIELDS[kind])),
            category=clean_text(attributes.get(CATEGORY_FIELDS[kind])),
            remaining_need=max(need, Decimal('0')) if need is not None else Decimal('0'),
            x=to_float(geometry.get('x')),
            y=to_float(geometry.get('y')),
        )

    def to_dict(self):
        return {
            'id': self.object_id,
            'kind': self.kind.value,
            'name': self.name,
            'email': self.email,
            'category': self.category,
            'remainingNeed': float(self.remaining_need),
            'x': self.x,
            'y': self.y,
        }


# ==========================================
#  4. DONOR
# ==========================================
@dataclass
class Donor:
    email: str
    object_id: Optional[int] = None
    name: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    # Present on some donor rows. Read for completeness, never decremented.
    remaining_need: Optional[Decimal] = None

    @classmethod
    def from_feature(cls, feature):
        attributes = feature.get('attributes') or {}
        geometry = feature.get('geometry') or {}

        email = clean_text(attributes.get(EMAIL_FIELDS[RecordClass.DONOR]))
        if email is None:
            return None

        return cls(
            email=email,
            object_id=to_int(attributes.get(ID_FIELD)),
            name=clean_text(attributes.get(NAME_FIELDS[RecordClass.DONOR])),
            x=to_float(geometry.get('x')),
            y=to_float(geometry.get('y')),
            remaining_need=to_decimal(attributes.get(NEED_FIELD)),
        )


# ==========================================
#  5. ALLOCATION REQUEST (One Batch Item)
# ==========================================
@dataclass(frozen=True)
class AllocationRequest:
    kind: Optional[RecordClass]
    recipient_id: Optional[int]
    requested_amount: Optional[Decimal]

    @classmethod
    def from_payload(cls, item):
        """
        Parses one item of the batch body. Never raises: a malformed item
        keeps None in the bad slot and is skipped later by the engine.
        """
        if not isinstance(item, dict):
            return cls(kind=None, recipient_id=None, requested_amount=None)
        return cls(
            kind=parse_kind(item.get('kind')),
            recipient_id=to_int(item.get('recipientId')),
            requested_amount=to_money(item.get('requestedAmount')),
        )


# ==========================================
#  6. DONATION RECORD (Ledger Entry)
# ==========================================
@dataclass
class DonationRecord:
    """
    One applied donation. Recipient details are copied at write time so
    the history survives later edits to the recipient's record.
    """
    donor_email: str
    recipient_kind: RecordClass
    recipient_id: int
    applied_amount: Decimal
    requested_amount: Decimal
    need_at_resolution: Decimal
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_category: Optional[str] = None
    donor_x: Optional[float] = None
    donor_y: Optional[float] = None
    recipient_x: Optional[float] = None
    recipient_y: Optional[float] = None
    donated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reconciliation_pending: bool = True
    entry_id: Optional[int] = None

    @classmethod
    def for_allocation(cls, donor, recipient, requested, applied):
        return cls(
            donor_email=donor.email,
            recipient_kind=recipient.kind,
            recipient_id=recipient.object_id,
            applied_amount=applied,
            requested_amount=requested,
            need_at_resolution=recipient.remaining_need,
            recipient_name=recipient.name,
            recipient_email=recipient.email,
            recipient_category=recipient.category,
            donor_x=donor.x,
            donor_y=donor.y,
            recipient_x=recipient.x,
            recipient_y=recipient.y,
        )

    @property
    def new_remaining_need(self):
        return max(Decimal('0'), self.need_at_resolution - self.applied_amount)

    def to_feature(self):
        """Serializes into the donation layer's attribute/geometry shape."""
        donated_at = self.donated_at
        if donated_at.tzinfo is None:
            donated_at = donated_at.replace(tzinfo=timezone.utc)

        donor_x = self.donor_x or 0
        donor_y = self.donor_y or 0
        return {
            'attributes': {
                'donor_email': self.donor_email or '',
                'recipient_email': self.recipient_email or '',
                'recipient_name': self.recipient_name or '',
                'donation_field': self.recipient_category or '',
                'donation_amount': float(self.applied_amount),
                'donation_date': int(donated_at.timestamp() * 1000),
                'donor_x': donor_x,
                'donor_y': donor_y,
                'recipient_x': self.recipient_x or 0,
                'recipient_y': self.recipient_y or 0,
            },
            'geometry': {'x': donor_x, 'y': donor_y, 'spatialReference': {'wkid': 4326}},
        }
