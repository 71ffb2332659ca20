"""Message template compiler.

Turns an action instance's template and field-mapping policy into:

1. a record definition: the ordered column -> platform expression map
   pushed to the marketing platform so it knows which contact (or
   program custom object) fields to include in each batch;
2. a renderer: a pure function from one batch record to the final
   message, sender id and tracked-link URL.

Field references come in three shapes: "FirstName", "C_FirstName"
(platform contact field naming) and "42__FirstName" (field id plus
name, used with program custom objects). The column name is always the
bare name with any "C_" prefix removed.

Usage:
    compiler = get_template_compiler()
    compiled = compiler.compile(instance)
    compiled.record_definition
    # {"ContactID": "{{Contact.Id}}", ..., "FirstName": "{{Contact.Field(C_FirstName)}}"}
    compiled.render({"FirstName": "Ada"}).message
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from smsbridge_core.domain.models import ActionInstance, CountrySetting
from smsbridge_core.observability.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================


PLACEHOLDER_PATTERN = re.compile(r"\[([^\[\]\n]+)\]")

TRACKED_LINK_PLACEHOLDER = "tracked-link"
UNSUB_REPLY_PLACEHOLDER = "unsub-reply-link"
RESERVED_PLACEHOLDERS = frozenset({TRACKED_LINK_PLACEHOLDER, UNSUB_REPLY_PLACEHOLDER})

DYNAMIC_SENDER_PREFIX = "##"
CONTACT_FIELD_PREFIX = "C_"

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass(frozen=True)
class FieldReference:
    """A parsed reference to a record field.

    Attributes:
        raw: The reference as configured.
        name: Column name (no "C_" prefix, no field id).
        field_id: Platform field id for "id__name" references.
    """

    raw: str
    name: str
    field_id: Optional[str] = None


@dataclass(frozen=True)
class RenderedMessage:
    """Output of rendering one record."""

    message: str
    sender_id: Optional[str]
    tracked_link_url: Optional[str]


@dataclass
class CompiledTemplate:
    """A compiled action instance: record definition plus renderer."""

    instance_id: str
    version: int
    template: str
    record_definition: dict[str, str]
    caller_id: Optional[str] = None
    tracked_link: Optional[str] = None
    skipped_references: list[str] = field(default_factory=list)

    @property
    def uses_tracked_link(self) -> bool:
        return f"[{TRACKED_LINK_PLACEHOLDER}]" in self.template

    def render(self, record: Mapping[str, Any]) -> RenderedMessage:
        """Render the message for one record.

        Args:
            record: Attribute map for one contact as sent by the platform.

        Returns:
            RenderedMessage with the merged body, the resolved sender id
            and the merged tracked-link base URL.
        """
        message = substitute_placeholders(self.template, record)
        message = normalise_whitespace(message)

        tracked_link_url = None
        if self.tracked_link:
            tracked_link_url = substitute_placeholders(self.tracked_link, record).strip() or None

        return RenderedMessage(
            message=message,
            sender_id=resolve_sender_id(self.caller_id, record),
            tracked_link_url=tracked_link_url,
        )


# =============================================================================
# FIELD HELPERS
# =============================================================================


def parse_field_reference(reference: Optional[str]) -> Optional[FieldReference]:
    """Parse a configured field reference.

    Returns None for empty and "undefined" references (the platform's
    config page posts the string "undefined" for unset selects).
    """
    if reference is None:
        return None

    raw = str(reference).strip()
    if not raw or raw == "undefined":
        return None

    field_id = None
    name = raw
    if "__" in raw:
        field_id, name = raw.split("__", 1)
        field_id = field_id or None

    if name.startswith(CONTACT_FIELD_PREFIX):
        name = name[len(CONTACT_FIELD_PREFIX):]

    if not name or name == "undefined":
        return None

    return FieldReference(raw=raw, name=name, field_id=field_id)


def field_value(record: Mapping[str, Any], reference: Optional[str]) -> Optional[str]:
    """Look up a field reference on a batch record.

    Keys are matched exactly first, then case-insensitively, because
    platform exports are not consistent about casing ("ContactID" vs
    "contactId").

    Returns:
        The value as a string, or None if absent or empty.
    """
    parsed = parse_field_reference(reference)
    if parsed is None or not record:
        return None

    for key in (parsed.name, parsed.raw, f"{CONTACT_FIELD_PREFIX}{parsed.name}"):
        if key in record:
            return _stringify(record[key])

    lowered = parsed.name.lower()
    for key, value in record.items():
        if str(key).lower() == lowered:
            return _stringify(value)

    return None


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def placeholder_names(text: Optional[str]) -> list[str]:
    """Every non-reserved placeholder in text, in order of appearance."""
    if not text:
        return []
    return [
        match.group(1)
        for match in PLACEHOLDER_PATTERN.finditer(text)
        if match.group(1) not in RESERVED_PLACEHOLDERS
    ]


def substitute_placeholders(text: str, record: Mapping[str, Any]) -> str:
    """Replace [Name] placeholders with record values.

    Reserved placeholders are left intact for the gateway to fill in.
    Missing values become empty strings.
    """

    def replace(match: re.Match) -> str:
        token = match.group(1)
        if token in RESERVED_PLACEHOLDERS:
            return match.group(0)
        return field_value(record, token) or ""

    return PLACEHOLDER_PATTERN.sub(replace, text)


def normalise_whitespace(message: str) -> str:
    """Collapse runs of three or more newlines to two and trim."""
    message = message.replace("\r\n", "\n")
    return _EXCESS_NEWLINES.sub("\n\n", message).strip()


def resolve_sender_id(caller_id: Optional[str], record: Mapping[str, Any]) -> Optional[str]:
    """Resolve a literal or "##FieldName" sender id against a record."""
    if not caller_id:
        return None
    if caller_id.startswith(DYNAMIC_SENDER_PREFIX):
        value = field_value(record, caller_id[len(DYNAMIC_SENDER_PREFIX):])
        if value:
            return value.strip()
    return caller_id


def field_expression(reference: FieldReference, program_coid: Optional[str]) -> str:
    """Platform expression that pulls a referenced field into a batch."""
    if program_coid:
        if reference.field_id and reference.field_id.isdigit():
            return f"{{{{CustomObject[{program_coid}].Field[{reference.field_id}]}}}}"
        return f"{{{{CustomObject[{program_coid}].Contact.Field(C_{reference.name})}}}}"
    return f"{{{{Contact.Field(C_{reference.name})}}}}"


# =============================================================================
# COMPILER
# =============================================================================


class TemplateCompiler:
    """Compiles action instances, caching by (instance_id, version).

    Instances bump their version on every configuration save, so a
    stale cache entry is never returned for a changed template.
    """

    def __init__(self):
        self._cache: dict[tuple[str, int], CompiledTemplate] = {}
        self._lock = threading.Lock()

    def compile(self, instance: ActionInstance) -> CompiledTemplate:
        key = (instance.instance_id, instance.version or 1)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        compiled = self._build(instance)
        with self._lock:
            # Older versions of this instance are no longer reachable
            for stale in [k for k in self._cache if k[0] == instance.instance_id]:
                del self._cache[stale]
            self._cache[key] = compiled
        return compiled

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _build(self, instance: ActionInstance) -> CompiledTemplate:
        program_coid = instance.program_coid or None
        definition: dict[str, str] = {}
        skipped: list[str] = []

        if program_coid:
            definition["ContactID"] = "{{CustomObject.Contact.Id}}"
            definition["EmailAddress"] = "{{CustomObject.Contact.EmailAddress}}"
        else:
            definition["ContactID"] = "{{Contact.Id}}"
            definition["EmailAddress"] = "{{Contact.Field(C_EmailAddress)}}"

        for reference in self._references(instance):
            parsed = parse_field_reference(reference)
            if parsed is None:
                skipped.append(str(reference))
                continue
            if parsed.name in definition:
                continue
            definition[parsed.name] = field_expression(parsed, program_coid)

        if program_coid:
            definition.setdefault("Id", "{{CustomObject.Id}}")

        if skipped:
            logger.warning(
                "template.references_skipped",
                instance_id=instance.instance_id,
                references=skipped,
            )

        return CompiledTemplate(
            instance_id=instance.instance_id,
            version=instance.version or 1,
            template=instance.template or "",
            record_definition=definition,
            caller_id=instance.caller_id,
            tracked_link=instance.tracked_link,
            skipped_references=skipped,
        )

    @staticmethod
    def _references(instance: ActionInstance) -> list[Optional[str]]:
        references: list[Optional[str]] = [instance.recipient_field]
        if instance.country_setting == CountrySetting.CUSTOM_FIELD:
            references.append(instance.country_field)
        if instance.caller_id and instance.caller_id.startswith(DYNAMIC_SENDER_PREFIX):
            references.append(instance.caller_id[len(DYNAMIC_SENDER_PREFIX):])
        references.extend(placeholder_names(instance.template))
        references.extend(placeholder_names(instance.tracked_link))
        return references


_compiler = TemplateCompiler()


def get_template_compiler() -> TemplateCompiler:
    """Get the process-wide template compiler."""
    return _compiler


__all__ = [
    "CompiledTemplate",
    "FieldReference",
    "RenderedMessage",
    "RESERVED_PLACEHOLDERS",
    "TemplateCompiler",
    "TRACKED_LINK_PLACEHOLDER",
    "field_expression",
    "field_value",
    "get_template_compiler",
    "normalise_whitespace",
    "parse_field_reference",
    "placeholder_names",
    "resolve_sender_id",
    "substitute_placeholders",
]
