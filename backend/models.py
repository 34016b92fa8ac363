from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone, timedelta
from enum import Enum
import math
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class EMRTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    ADVANCED = "advanced"

class SubscriptionDuration(str, Enum):
    SIX_MONTHS = "6_months"
    ONE_YEAR = "1_year"

    @property
    def total_days(self) -> int:
        """Nominal length used for both activation and proration."""
        return 180 if self is SubscriptionDuration.SIX_MONTHS else 365

class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class SubscriptionKind(str, Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"

class OrderType(str, Enum):
    """Tag carried in gateway order notes."""
    SUBSCRIPTION = "subscription"
    UPGRADE = "upgrade"
    RENEWAL = "renewal"

class ClinicRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"
    RECEPTIONIST = "receptionist"

class ReminderWindow(str, Enum):
    THIRTY_DAYS = "thirty_days"
    SEVEN_DAYS = "seven_days"
    ONE_DAY = "one_day"
    EXPIRED = "expired"

    @property
    def days_before_expiry(self) -> Optional[int]:
        return {
            ReminderWindow.THIRTY_DAYS: 30,
            ReminderWindow.SEVEN_DAYS: 7,
            ReminderWindow.ONE_DAY: 1,
        }.get(self)

# Sweep order matters only for log readability
UPCOMING_REMINDER_WINDOWS = (
    ReminderWindow.THIRTY_DAYS,
    ReminderWindow.SEVEN_DAYS,
    ReminderWindow.ONE_DAY,
)

class AuditAction(str, Enum):
    # Orders
    EMR_ORDER_CREATED = "EMR_ORDER_CREATED"
    EMR_ORDER_GATEWAY_FAILED = "EMR_ORDER_GATEWAY_FAILED"
    EMR_UPGRADE_ORDER_CREATED = "EMR_UPGRADE_ORDER_CREATED"
    EMR_RENEWAL_ORDER_CREATED = "EMR_RENEWAL_ORDER_CREATED"

    # Payment verification
    EMR_SUBSCRIPTION_ACTIVATED = "EMR_SUBSCRIPTION_ACTIVATED"
    EMR_SIGNATURE_MISMATCH = "EMR_SIGNATURE_MISMATCH"
    EMR_PLAN_UPGRADED = "EMR_PLAN_UPGRADED"
    EMR_SUBSCRIPTION_RENEWED = "EMR_SUBSCRIPTION_RENEWED"

    # Lifecycle
    EMR_SUBSCRIPTION_EXPIRED = "EMR_SUBSCRIPTION_EXPIRED"
    EMR_LAPSED_ENTITLEMENT_REVOKED = "EMR_LAPSED_ENTITLEMENT_REVOKED"
    EMR_AUTO_RENEW_TOGGLED = "EMR_AUTO_RENEW_TOGGLED"
    EMR_REMINDER_SENT = "EMR_REMINDER_SENT"

    # Access
    EMR_ACCESS_DENIED = "EMR_ACCESS_DENIED"

# ============================================================================
# STATE MACHINE
# ============================================================================

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    SubscriptionStatus.PENDING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.EXPIRED: frozenset(),
    SubscriptionStatus.CANCELLED: frozenset(),
}


class IllegalTransition(Exception):
    """Raised when code attempts a status change the transition table forbids."""
    def __init__(self, current: SubscriptionStatus, target: SubscriptionStatus):
        self.current = current
        self.target = target
        super().__init__(f"Illegal subscription transition {current.value} -> {target.value}")


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_bson(value: Any) -> Any:
    """Replace enum members with their values so the document encodes cleanly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    return value

# ============================================================================
# SUBSCRIPTION RECORD
# ============================================================================

class PlanLimits(BaseModel):
    """Caps snapshotted from the tier at purchase/upgrade time. -1 means unlimited."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    max_doctors: int
    max_staff: int


class PaymentDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    amount: int = 0  # whole rupees
    currency: str = "INR"
    receipt: Optional[str] = None
    paid_at: Optional[datetime] = None
    invoice_number: Optional[str] = None


class PendingUpgrade(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: str
    to_plan: EMRTier
    amount: int
    currency: str = "INR"
    days_remaining: int
    requested_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class PlanHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    from_plan: EMRTier
    to_plan: EMRTier
    changed_at: datetime = Field(default_factory=utc_now)
    reason: str = "upgrade"
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    invoice_number: Optional[str] = None


class RemindersSent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thirty_days: bool = False
    seven_days: bool = False
    one_day: bool = False
    expired: bool = False


class EMRSubscription(BaseModel):
    """One clinic's EMR add-on purchase, from order placement to expiry."""
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=lambda: f"EMRS-{uuid.uuid4().hex[:12].upper()}")
    clinic_id: str

    plan: EMRTier
    duration: SubscriptionDuration
    kind: SubscriptionKind = SubscriptionKind.SUBSCRIPTION
    previous_subscription_id: Optional[str] = None

    status: SubscriptionStatus = SubscriptionStatus.PENDING
    # True while this record owns the clinic's single live slot (unique partial index)
    holds_clinic_slot: bool = False
    # True while this unpaid renewal is the clinic's one open renewal order (unique partial index)
    holds_renewal_slot: bool = False
    # Set when the gateway order call failed; a retry claims the record by clearing it
    gateway_error: Optional[str] = None

    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None

    limits: PlanLimits
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    pending_upgrade: Optional[PendingUpgrade] = None
    plan_history: List[PlanHistoryEntry] = Field(default_factory=list)
    reminders_sent: RemindersSent = Field(default_factory=RemindersSent)
    auto_renew: bool = False

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    expired_at: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once the paid period has passed, whatever the stored status says."""
        expiry = as_utc(self.expiry_date)
        if expiry is None:
            return False
        return (now or utc_now()) > expiry

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        if self.status != SubscriptionStatus.ACTIVE or self.expiry_date is None:
            return 0
        delta = as_utc(self.expiry_date) - (now or utc_now())
        return max(0, math.ceil(delta / timedelta(days=1)))

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition_to(self, target: SubscriptionStatus) -> None:
        if not can_transition(self.status, target):
            raise IllegalTransition(self.status, target)
        self.status = target

    def activate(self, now: datetime) -> None:
        """pending -> active; the paid period starts at payment time, not order time."""
        self.transition_to(SubscriptionStatus.ACTIVE)
        self.start_date = now
        self.expiry_date = now + timedelta(days=self.duration.total_days)
        self.holds_clinic_slot = True
        self.holds_renewal_slot = False
        self.updated_at = now

    def cancel(self, now: datetime, reason: str) -> None:
        self.transition_to(SubscriptionStatus.CANCELLED)
        self.holds_clinic_slot = False
        self.holds_renewal_slot = False
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.updated_at = now

    def expire(self, now: datetime) -> None:
        self.transition_to(SubscriptionStatus.EXPIRED)
        self.holds_clinic_slot = False
        self.reminders_sent.expired = True
        self.expired_at = now
        self.updated_at = now

    def to_document(self) -> Dict[str, Any]:
        return to_bson(self.model_dump(mode="python"))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "EMRSubscription":
        doc = {k: v for k, v in doc.items() if k != "_id"}
        return cls.model_validate(doc)


# ============================================================================
# AUDIT / NOTIFICATION RECORDS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    clinic_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class NotificationMessage(BaseModel):
    """Outbound reminder or upgrade-prompt event handed to the notification transport."""
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    clinic_id: str
    subscription_id: Optional[str] = None
    event_type: str  # emr.expiry_reminder, emr.expired, emr.upgrade_prompt
    reminder_window: Optional[ReminderWindow] = None
    days_before_expiry: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: str = "queued"
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
