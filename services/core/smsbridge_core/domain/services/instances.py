"""Instance store for action, feeder and decision steps.

Instances are created by the marketing platform when an operator drops
one of our steps onto a campaign canvas, configured through the
config page and copied or deleted along with the campaign.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from smsbridge_core.domain.models import (
    ActionInstance,
    CountrySetting,
    DecisionInstance,
    FeederInstance,
    FeederType,
    TextType,
    utcnow,
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class InstanceError(Exception):
    """Base exception for instance operations."""
    pass


class InstanceNotFoundError(InstanceError):
    """Raised when an instance id does not exist or was deleted."""
    pass


class InstanceConfigurationError(InstanceError):
    """Raised when a configuration save contains invalid values."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================


ACTION_FIELDS = {
    "asset_id",
    "asset_name",
    "template",
    "caller_id",
    "recipient_field",
    "country_field",
    "country_setting",
    "program_coid",
    "tracked_link",
    "message_expiry",
    "message_validity",
    "custom_object_id",
    "mobile_field",
    "email_field",
    "title_field",
    "notification_field",
    "outgoing_field",
    "vn_field",
    "decision_instance_id",
    "decision_window_hours",
}

FEEDER_FIELDS = {
    "asset_id",
    "feeder_type",
    "sender_ids",
    "text_type",
    "keyword",
    "field_mappings",
}

DECISION_FIELDS = {"evaluation_period", "text_type", "keyword"}

MIN_VALIDITY_HOURS = 1
MAX_VALIDITY_HOURS = 72
MIN_EVALUATION_HOURS = 1
MAX_EVALUATION_HOURS = 168

VALID_COUNTRY_SETTINGS = {CountrySetting.CONTACT_COUNTRY, CountrySetting.CUSTOM_FIELD}
VALID_FEEDER_TYPES = {FeederType.INCOMING_SMS, FeederType.LINK_HITS}
VALID_TEXT_TYPES = {TextType.ANYTHING, TextType.KEYWORD}

# Columns reset when an instance is copied
_COPY_EXCLUDED = {"id", "instance_id", "created_at", "updated_at"}


def _new_instance_id() -> str:
    return str(uuid.uuid4())


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and (not value.strip() or value.strip() == "undefined"):
        return None
    return value


class InstanceService:
    """Service for configured campaign step instances."""

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Action instances
    # -------------------------------------------------------------------------

    def create_action(
        self,
        install_id: str,
        site_id: str,
        instance_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> ActionInstance:
        instance = ActionInstance(
            instance_id=instance_id or _new_instance_id(),
            install_id=install_id,
            site_id=site_id,
            asset_id=asset_id,
            recipient_field="MobilePhone",
            country_setting=CountrySetting.CONTACT_COUNTRY,
            message_expiry=False,
            message_validity=MIN_VALIDITY_HOURS,
            requires_configuration=True,
            version=1,
        )
        self.db.add(instance)
        self.db.flush()
        return instance

    def get_action(self, instance_id: str) -> Optional[ActionInstance]:
        return (
            self.db.query(ActionInstance)
            .filter(
                ActionInstance.instance_id == instance_id,
                ActionInstance.is_active.is_(True),
            )
            .first()
        )

    def require_action(self, instance_id: str) -> ActionInstance:
        instance = self.get_action(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Action instance {instance_id} not found")
        return instance

    def configure_action(self, instance_id: str, **fields: Any) -> ActionInstance:
        """Save action configuration and bump its version.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InstanceConfigurationError: If a field is unknown or invalid.
        """
        unknown = set(fields) - ACTION_FIELDS
        if unknown:
            raise InstanceConfigurationError(f"Unknown action fields: {sorted(unknown)}")

        instance = self.require_action(instance_id)
        values = {name: _blank_to_none(value) for name, value in fields.items()}

        if "country_setting" in values:
            values["country_setting"] = values["country_setting"] or CountrySetting.CONTACT_COUNTRY
            if values["country_setting"] not in VALID_COUNTRY_SETTINGS:
                raise InstanceConfigurationError(
                    f"country_setting must be one of {sorted(VALID_COUNTRY_SETTINGS)}"
                )

        if "message_validity" in values and values["message_validity"] is not None:
            try:
                validity = int(values["message_validity"])
            except (TypeError, ValueError):
                raise InstanceConfigurationError("message_validity must be a whole number of hours")
            if not MIN_VALIDITY_HOURS <= validity <= MAX_VALIDITY_HOURS:
                raise InstanceConfigurationError(
                    f"message_validity must be between {MIN_VALIDITY_HOURS} and {MAX_VALIDITY_HOURS} hours"
                )
            values["message_validity"] = validity
        elif "message_validity" in values:
            values["message_validity"] = MIN_VALIDITY_HOURS

        if "message_expiry" in values:
            values["message_expiry"] = _as_bool(values["message_expiry"])

        if "recipient_field" in values and not values["recipient_field"]:
            raise InstanceConfigurationError("recipient_field is required")

        for name, value in values.items():
            setattr(instance, name, value)

        instance.version = (instance.version or 1) + 1
        instance.requires_configuration = not (instance.template and instance.recipient_field)
        self.db.flush()
        return instance

    def copy_action(self, instance_id: str, new_instance_id: Optional[str] = None) -> ActionInstance:
        """Copy an action instance with fresh statistics."""
        source = self.require_action(instance_id)
        values = {
            column.key: getattr(source, column.key)
            for column in ActionInstance.__table__.columns
            if column.key not in _COPY_EXCLUDED
        }
        values.update(
            instance_id=new_instance_id or _new_instance_id(),
            sent_count=0,
            failed_count=0,
            last_executed_at=None,
            version=1,
        )
        copy = ActionInstance(**values)
        self.db.add(copy)
        self.db.flush()
        return copy

    def delete_action(self, instance_id: str) -> bool:
        instance = self.get_action(instance_id)
        if instance is None:
            return False
        instance.is_active = False
        self.db.flush()
        return True

    def increment_sent(self, instance_id: str, now: Optional[datetime] = None) -> None:
        """Atomically bump sent_count and last_executed_at."""
        self.db.query(ActionInstance).filter(
            ActionInstance.instance_id == instance_id
        ).update(
            {
                ActionInstance.sent_count: ActionInstance.sent_count + 1,
                ActionInstance.last_executed_at: now or utcnow(),
            },
            synchronize_session=False,
        )
        self.db.flush()

    def increment_failed(self, instance_id: str, now: Optional[datetime] = None) -> None:
        """Atomically bump failed_count and last_executed_at."""
        self.db.query(ActionInstance).filter(
            ActionInstance.instance_id == instance_id
        ).update(
            {
                ActionInstance.failed_count: ActionInstance.failed_count + 1,
                ActionInstance.last_executed_at: now or utcnow(),
            },
            synchronize_session=False,
        )
        self.db.flush()

    # -------------------------------------------------------------------------
    # Feeder instances
    # -------------------------------------------------------------------------

    def create_feeder(
        self,
        install_id: str,
        site_id: str,
        feeder_type: str = FeederType.INCOMING_SMS,
        instance_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> FeederInstance:
        if feeder_type not in VALID_FEEDER_TYPES:
            raise InstanceConfigurationError(
                f"feeder_type must be one of {sorted(VALID_FEEDER_TYPES)}"
            )
        feeder = FeederInstance(
            instance_id=instance_id or _new_instance_id(),
            install_id=install_id,
            site_id=site_id,
            asset_id=asset_id,
            feeder_type=feeder_type,
            sender_ids=[],
            text_type=TextType.ANYTHING,
            field_mappings={},
            requires_configuration=True,
        )
        self.db.add(feeder)
        self.db.flush()
        return feeder

    def get_feeder(self, instance_id: str) -> Optional[FeederInstance]:
        return (
            self.db.query(FeederInstance)
            .filter(
                FeederInstance.instance_id == instance_id,
                FeederInstance.is_active.is_(True),
            )
            .first()
        )

    def require_feeder(self, instance_id: str) -> FeederInstance:
        feeder = self.get_feeder(instance_id)
        if feeder is None:
            raise InstanceNotFoundError(f"Feeder instance {instance_id} not found")
        return feeder

    def configure_feeder(self, instance_id: str, **fields: Any) -> FeederInstance:
        """Save feeder configuration.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            InstanceConfigurationError: If a field is unknown or invalid.
        """
        unknown = set(fields) - FEEDER_FIELDS
        if unknown:
            raise InstanceConfigurationError(f"Unknown feeder fields: {sorted(unknown)}")

        feeder = self.require_feeder(instance_id)
        values = {name: _blank_to_none(value) for name, value in fields.items()}

        if "feeder_type" in values and values["feeder_type"] not in VALID_FEEDER_TYPES:
            raise InstanceConfigurationError(
                f"feeder_type must be one of {sorted(VALID_FEEDER_TYPES)}"
            )
        if "text_type" in values:
            values["text_type"] = values["text_type"] or TextType.ANYTHING
            if values["text_type"] not in VALID_TEXT_TYPES:
                raise InstanceConfigurationError(
                    f"text_type must be one of {sorted(VALID_TEXT_TYPES)}"
                )
        if "sender_ids" in values:
            values["sender_ids"] = _ordered_unique(values["sender_ids"] or [])
        if "field_mappings" in values:
            mappings = values["field_mappings"] or {}
            if not isinstance(mappings, dict):
                raise InstanceConfigurationError("field_mappings must be an object")
            values["field_mappings"] = {
                str(k): str(v) for k, v in mappings.items() if _blank_to_none(v) is not None
            }

        for name, value in values.items():
            setattr(feeder, name, value)

        if feeder.text_type == TextType.KEYWORD and not feeder.keyword:
            raise InstanceConfigurationError("keyword is required when text_type is Keyword")

        feeder.requires_configuration = not feeder.field_mappings
        self.db.flush()
        return feeder

    def copy_feeder(self, instance_id: str, new_instance_id: Optional[str] = None) -> FeederInstance:
        source = self.require_feeder(instance_id)
        values = {
            column.key: getattr(source, column.key)
            for column in FeederInstance.__table__.columns
            if column.key not in _COPY_EXCLUDED
        }
        values.update(
            instance_id=new_instance_id or _new_instance_id(),
            records_sent=0,
            last_polled_at=None,
        )
        copy = FeederInstance(**values)
        self.db.add(copy)
        self.db.flush()
        return copy

    def delete_feeder(self, instance_id: str) -> bool:
        feeder = self.get_feeder(instance_id)
        if feeder is None:
            return False
        feeder.is_active = False
        self.db.flush()
        return True

    def record_feeder_poll(
        self,
        instance_id: str,
        count: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Add count to records_sent and stamp last_polled_at."""
        self.db.query(FeederInstance).filter(
            FeederInstance.instance_id == instance_id
        ).update(
            {
                FeederInstance.records_sent: FeederInstance.records_sent + count,
                FeederInstance.last_polled_at: now or utcnow(),
            },
            synchronize_session=False,
        )
        self.db.flush()

    # -------------------------------------------------------------------------
    # Decision instances
    # -------------------------------------------------------------------------

    def create_decision(
        self,
        install_id: str,
        site_id: str,
        instance_id: Optional[str] = None,
    ) -> DecisionInstance:
        decision = DecisionInstance(
            instance_id=instance_id or _new_instance_id(),
            install_id=install_id,
            site_id=site_id,
            evaluation_period=24,
            text_type=TextType.ANYTHING,
            requires_configuration=True,
        )
        self.db.add(decision)
        self.db.flush()
        return decision

    def get_decision(self, instance_id: str) -> Optional[DecisionInstance]:
        return (
            self.db.query(DecisionInstance)
            .filter(
                DecisionInstance.instance_id == instance_id,
                DecisionInstance.is_active.is_(True),
            )
            .first()
        )

    def require_decision(self, instance_id: str) -> DecisionInstance:
        decision = self.get_decision(instance_id)
        if decision is None:
            raise InstanceNotFoundError(f"Decision instance {instance_id} not found")
        return decision

    def configure_decision(self, instance_id: str, **fields: Any) -> DecisionInstance:
        unknown = set(fields) - DECISION_FIELDS
        if unknown:
            raise InstanceConfigurationError(f"Unknown decision fields: {sorted(unknown)}")

        decision = self.require_decision(instance_id)

        if "evaluation_period" in fields:
            try:
                period = int(fields["evaluation_period"])
            except (TypeError, ValueError):
                raise InstanceConfigurationError("evaluation_period must be a whole number of hours")
            if not MIN_EVALUATION_HOURS <= period <= MAX_EVALUATION_HOURS:
                raise InstanceConfigurationError(
                    f"evaluation_period must be between {MIN_EVALUATION_HOURS} and {MAX_EVALUATION_HOURS} hours"
                )
            decision.evaluation_period = period
        if "text_type" in fields:
            text_type = fields["text_type"] or TextType.ANYTHING
            if text_type not in VALID_TEXT_TYPES:
                raise InstanceConfigurationError(
                    f"text_type must be one of {sorted(VALID_TEXT_TYPES)}"
                )
            decision.text_type = text_type
        if "keyword" in fields:
            decision.keyword = _blank_to_none(fields["keyword"])

        if decision.text_type == TextType.KEYWORD and not decision.keyword:
            raise InstanceConfigurationError("keyword is required when text_type is Keyword")

        decision.requires_configuration = False
        self.db.flush()
        return decision

    def copy_decision(
        self,
        instance_id: str,
        new_instance_id: Optional[str] = None,
    ) -> DecisionInstance:
        source = self.require_decision(instance_id)
        values = {
            column.key: getattr(source, column.key)
            for column in DecisionInstance.__table__.columns
            if column.key not in _COPY_EXCLUDED
        }
        values["instance_id"] = new_instance_id or _new_instance_id()
        copy = DecisionInstance(**values)
        self.db.add(copy)
        self.db.flush()
        return copy

    def delete_decision(self, instance_id: str) -> bool:
        decision = self.get_decision(instance_id)
        if decision is None:
            return False
        decision.is_active = False
        self.db.flush()
        return True


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in {"YES", "TRUE", "1", "ON"}
    return bool(value)


def _ordered_unique(values: list) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        text = str(value).strip()
        if text:
            seen.setdefault(text, None)
    return list(seen)


__all__ = [
    "InstanceConfigurationError",
    "InstanceError",
    "InstanceNotFoundError",
    "InstanceService",
]
