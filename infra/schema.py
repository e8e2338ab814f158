from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


metadata = MetaData()


invite_codes = Table(
    "invite_codes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(16), nullable=False),
    Column("inviter_id", String(64), nullable=False, index=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("max_usage", Integer, nullable=False, default=100),
    UniqueConstraint("code", name="uq_invite_codes_code"),
)

invite_registrations = Table(
    "invite_registrations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("invite_code_id", String(36), nullable=False, index=True),
    Column("inviter_id", String(64), nullable=False, index=True),
    Column("invitee_id", String(64), nullable=False),
    Column("registered_at", UTCDateTime, nullable=False),
    Column("is_activated", Boolean, nullable=False, default=False),
    Column("activated_at", UTCDateTime, nullable=True),
    Column("rewards_claimed", Boolean, nullable=False, default=False),
    UniqueConstraint("invitee_id", name="uq_invite_registrations_invitee"),
)

invite_stats = Table(
    "invite_stats",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("total_invites", Integer, nullable=False, default=0),
    Column("successful_registrations", Integer, nullable=False, default=0),
    Column("active_invitees", Integer, nullable=False, default=0),
    Column("total_rewards_earned", Integer, nullable=False, default=0),
    Column("last_updated", UTCDateTime, nullable=False),
)

credit_records = Table(
    "credit_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("type", String(16), nullable=False),
    Column("source", String(32), nullable=False),
    Column("source_id", String(128), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("expires_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("used_at", UTCDateTime, nullable=True),
    Index("ix_credit_records_user_type_expiry", "user_id", "type", "expires_at"),
)

credit_usage = Table(
    "credit_usage",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("amount", Integer, nullable=False),
    Column("purpose", String(128), nullable=False),
    Column("metadata", JSON, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
)

user_credit_balances = Table(
    "user_credit_balances",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("total_earned", Integer, nullable=False, default=0),
    Column("total_used", Integer, nullable=False, default=0),
    Column("total_expired", Integer, nullable=False, default=0),
    Column("available_credits", Integer, nullable=False, default=0),
    Column("expiring_credits", Integer, nullable=False, default=0),
    Column("last_updated", UTCDateTime, nullable=False),
)

reward_rules = Table(
    "reward_rules",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(128), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("event_type", String(32), nullable=False),
    Column("reward_type", String(32), nullable=False),
    Column("reward_amount", Integer, nullable=False, default=0),
    Column("conditions", JSON, nullable=True),
    Column("actions", JSON, nullable=True),
    Column("priority", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

reward_approvals = Table(
    "reward_approvals",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("reward_type", String(32), nullable=False),
    Column("reward_amount", Integer, nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False, default="pending"),
    Column("source", String(32), nullable=False, default="admin_grant"),
    Column("rule_id", String(64), nullable=True),
    Column("source_id", String(128), nullable=True),
    Column("admin_id", String(64), nullable=True),
    Column("admin_notes", Text, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("approved_at", UTCDateTime, nullable=True),
    Column("rejected_at", UTCDateTime, nullable=True),
)

invite_event_logs = Table(
    "invite_event_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("event_type", String(32), nullable=False),
    Column("inviter_id", String(64), nullable=True, index=True),
    Column("invitee_id", String(64), nullable=True),
    Column("invite_code_id", String(36), nullable=True),
    Column("ip_address", String(64), nullable=True),
    Column("user_agent", Text, nullable=True),
    Column("device_fingerprint", String(256), nullable=True),
    Column("risk_score", Float, nullable=True),
    Column("payload", JSON, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Index("ix_invite_event_logs_ip_created", "ip_address", "created_at"),
)

milestone_rewards = Table(
    "milestone_rewards",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("milestone_type", String(32), nullable=False),
    Column("milestone", Integer, nullable=False),
    Column("source_id", String(128), nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    UniqueConstraint("user_id", "milestone_type", "milestone", name="uq_milestone_rewards_user_milestone"),
)

deferred_rewards = Table(
    "deferred_rewards",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("rule_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=False, index=True),
    Column("reward_type", String(32), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("route", String(16), nullable=False),
    Column("source", String(32), nullable=False),
    Column("source_id", String(128), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False, default="pending"),
    Column("not_before", UTCDateTime, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("released_at", UTCDateTime, nullable=True),
    Index("ix_deferred_rewards_status_not_before", "status", "not_before"),
)

suspicious_activities = Table(
    "suspicious_activities",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("ip_address", String(64), nullable=True),
    Column("activity_type", String(32), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("severity", String(16), nullable=False),
    Column("payload", JSON, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
)

user_risk_profiles = Table(
    "user_risk_profiles",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("risk_level", String(16), nullable=False, default="low"),
    Column("reason", Text, nullable=True),
    Column("updated_at", UTCDateTime, nullable=False),
)

user_bans = Table(
    "user_bans",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("reason", Text, nullable=False),
    Column("expires_at", UTCDateTime, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", UTCDateTime, nullable=False),
)


def create_schema(engine) -> None:
    metadata.create_all(engine)
