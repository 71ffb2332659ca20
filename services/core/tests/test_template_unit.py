"""Unit tests for the message template compiler.

Tests cover:
- Field reference parsing
- Record definition generation for contacts and program custom objects
- Message rendering, reserved placeholders and whitespace
- Dynamic sender ids
- Compile cache keyed by instance version
"""

from typing import Optional

from smsbridge_core.domain.models import ActionInstance, CountrySetting
from smsbridge_core.domain.services.template import (
    TemplateCompiler,
    field_value,
    normalise_whitespace,
    parse_field_reference,
    placeholder_names,
    resolve_sender_id,
    substitute_placeholders,
)


def make_instance(
    template: str = "Hi [FirstName], your code is [Code]",
    recipient_field: str = "MobilePhone",
    caller_id: Optional[str] = None,
    program_coid: Optional[str] = None,
    tracked_link: Optional[str] = None,
    version: int = 1,
    **kwargs,
) -> ActionInstance:
    return ActionInstance(
        instance_id=kwargs.pop("instance_id", "inst-template"),
        install_id="install-1",
        site_id="3456789",
        template=template,
        recipient_field=recipient_field,
        caller_id=caller_id,
        program_coid=program_coid,
        tracked_link=tracked_link,
        country_setting=kwargs.pop("country_setting", CountrySetting.CONTACT_COUNTRY),
        version=version,
        **kwargs,
    )


class TestFieldReferences:
    """Tests for parsing and looking up field references."""

    def test_plain_name(self):
        """Test that a bare name parses to itself."""
        ref = parse_field_reference("FirstName")
        assert ref.name == "FirstName"
        assert ref.field_id is None

    def test_contact_prefix_stripped(self):
        """Test that the C_ prefix is removed from the column name."""
        assert parse_field_reference("C_FirstName").name == "FirstName"

    def test_field_id_split(self):
        """Test that id__name references keep the field id."""
        ref = parse_field_reference("42__C_Mobile")
        assert ref.field_id == "42"
        assert ref.name == "Mobile"

    def test_undefined_and_empty_ignored(self):
        """Test that unset selects produce no reference."""
        assert parse_field_reference("undefined") is None
        assert parse_field_reference("  ") is None
        assert parse_field_reference(None) is None

    def test_field_value_case_insensitive(self):
        """Test that record keys match regardless of case."""
        assert field_value({"contactid": "123"}, "ContactID") == "123"

    def test_field_value_prefixed_key(self):
        """Test that a C_ keyed record value is found for a bare reference."""
        assert field_value({"C_Code": 42}, "Code") == "42"

    def test_field_value_empty_is_none(self):
        assert field_value({"Code": ""}, "Code") is None
        assert field_value({}, "Code") is None


class TestPlaceholders:
    """Tests for placeholder extraction and substitution."""

    def test_names_in_order_without_reserved(self):
        """Test that reserved placeholders are not treated as fields."""
        names = placeholder_names("[A] [tracked-link] [B] [unsub-reply-link]")
        assert names == ["A", "B"]

    def test_missing_values_become_empty(self):
        """Test that an absent field renders as an empty string."""
        assert substitute_placeholders("Hi [Name]!", {}) == "Hi !"

    def test_reserved_placeholders_preserved(self):
        """Test that the gateway's placeholders survive substitution."""
        text = substitute_placeholders("Go [tracked-link] or [unsub-reply-link]", {})
        assert text == "Go [tracked-link] or [unsub-reply-link]"

    def test_whitespace_normalised(self):
        """Test that three or more newlines collapse to two."""
        assert normalise_whitespace("A\r\n\r\n\r\n\r\nB  \n") == "A\n\nB"

    def test_placeholders_replaced_by_their_values(self):
        """Test that rendering with each placeholder set to its own name gives back the text."""
        assert substitute_placeholders("[A] and [B]", {"A": "A", "B": "B"}) == "A and B"
        compiled = TemplateCompiler().compile(make_instance(template="[A] and [B]"))
        assert compiled.render({"A": "A", "B": "B"}).message == "A and B"


class TestSenderResolution:
    """Tests for literal and dynamic sender ids."""

    def test_literal(self):
        assert resolve_sender_id("ACME", {}) == "ACME"

    def test_dynamic_resolved(self):
        """Test that ##Field takes the value from the record."""
        assert resolve_sender_id("##Sender", {"Sender": " 61400000001 "}) == "61400000001"

    def test_dynamic_unresolved_falls_back_to_literal(self):
        """Test that a missing dynamic value leaves the configured text."""
        assert resolve_sender_id("##Sender", {}) == "##Sender"

    def test_none(self):
        assert resolve_sender_id(None, {"Sender": "x"}) is None


class TestRecordDefinition:
    """Tests for record definition generation."""

    def test_contact_definition(self):
        """Test the contact-sourced record definition."""
        compiled = TemplateCompiler().compile(make_instance())

        assert compiled.record_definition == {
            "ContactID": "{{Contact.Id}}",
            "EmailAddress": "{{Contact.Field(C_EmailAddress)}}",
            "MobilePhone": "{{Contact.Field(C_MobilePhone)}}",
            "FirstName": "{{Contact.Field(C_FirstName)}}",
            "Code": "{{Contact.Field(C_Code)}}",
        }

    def test_definition_starts_with_identity_columns(self):
        """Test that ContactID and EmailAddress always come first."""
        compiled = TemplateCompiler().compile(make_instance(template="Plain text"))
        assert list(compiled.record_definition)[:2] == ["ContactID", "EmailAddress"]

    def test_custom_country_field_included(self):
        """Test that a custom country field is pulled into the batch."""
        instance = make_instance(
            country_setting=CountrySetting.CUSTOM_FIELD,
            country_field="C_Country",
        )
        compiled = TemplateCompiler().compile(instance)
        assert compiled.record_definition["Country"] == "{{Contact.Field(C_Country)}}"

    def test_dynamic_sender_field_included(self):
        compiled = TemplateCompiler().compile(make_instance(caller_id="##SenderName"))
        assert "SenderName" in compiled.record_definition

    def test_program_custom_object_definition(self):
        """Test that program custom object references use the object's fields."""
        instance = make_instance(
            template="Hi [FirstName]",
            recipient_field="42__Mobile",
            program_coid="55",
        )
        compiled = TemplateCompiler().compile(instance)

        assert compiled.record_definition == {
            "ContactID": "{{CustomObject.Contact.Id}}",
            "EmailAddress": "{{CustomObject.Contact.EmailAddress}}",
            "Mobile": "{{CustomObject[55].Field[42]}}",
            "FirstName": "{{CustomObject[55].Contact.Field(C_FirstName)}}",
            "Id": "{{CustomObject.Id}}",
        }

    def test_duplicate_references_listed_once(self):
        compiled = TemplateCompiler().compile(
            make_instance(template="[FirstName] [C_FirstName] [FirstName]")
        )
        assert list(compiled.record_definition).count("FirstName") == 1

    def test_undefined_reference_skipped(self):
        """Test that an unset recipient select is reported, not compiled."""
        compiled = TemplateCompiler().compile(make_instance(recipient_field="undefined"))
        assert compiled.skipped_references == ["undefined"]
        assert "undefined" not in compiled.record_definition

    def test_definition_independent_of_compiler(self):
        """Test that separate compilers produce the same definition for one instance."""
        instance = make_instance(
            template="Hi [FirstName] [C_LastName], [tracked-link]",
            caller_id="##SenderName",
            country_setting=CountrySetting.CUSTOM_FIELD,
            country_field="C_Country",
        )

        first = TemplateCompiler().compile(instance)
        second = TemplateCompiler().compile(instance)

        assert first is not second
        assert first.record_definition == second.record_definition
        assert list(first.record_definition) == list(second.record_definition)

    def test_every_placeholder_is_in_definition(self):
        """Test that each template field is fetched by the definition."""
        instance = make_instance(template="[A] [B] [C_C] [tracked-link]")
        compiled = TemplateCompiler().compile(instance)
        for name in ("A", "B", "C"):
            assert name in compiled.record_definition


class TestRender:
    """Tests for rendering one record."""

    def test_render_message(self):
        """Test that placeholders are filled from the record."""
        compiled = TemplateCompiler().compile(make_instance())
        rendered = compiled.render({"FirstName": "Ada", "C_Code": "42"})

        assert rendered.message == "Hi Ada, your code is 42"
        assert rendered.sender_id is None
        assert rendered.tracked_link_url is None

    def test_render_tracked_link(self):
        """Test that the tracked link base URL is merged per record."""
        instance = make_instance(
            template="Visit [tracked-link]",
            tracked_link="https://example.com/offer?c=[ContactID]",
        )
        compiled = TemplateCompiler().compile(instance)
        rendered = compiled.render({"ContactID": "123"})

        assert compiled.uses_tracked_link is True
        assert rendered.message == "Visit [tracked-link]"
        assert rendered.tracked_link_url == "https://example.com/offer?c=123"

    def test_render_dynamic_sender(self):
        compiled = TemplateCompiler().compile(make_instance(caller_id="##Sender"))
        rendered = compiled.render({"Sender": "ACME"})
        assert rendered.sender_id == "ACME"


class TestCompileCache:
    """Tests for the (instance_id, version) compile cache."""

    def test_same_version_cached(self):
        """Test that compiling an unchanged instance reuses the result."""
        compiler = TemplateCompiler()
        instance = make_instance()
        assert compiler.compile(instance) is compiler.compile(instance)

    def test_new_version_recompiled(self):
        """Test that a version bump produces a fresh compilation."""
        compiler = TemplateCompiler()
        first = compiler.compile(make_instance(template="Old [A]", version=1))
        second = compiler.compile(make_instance(template="New [B]", version=2))

        assert first is not second
        assert second.template == "New [B]"
        assert "B" in second.record_definition

    def test_clear(self):
        compiler = TemplateCompiler()
        instance = make_instance()
        first = compiler.compile(instance)
        compiler.clear()
        assert compiler.compile(instance) is not first
