"""
Unit tests for the HL7 message templates.

No database needed:
1. every placeholder is substituted
2. values are XML-escaped, except pre-rendered fragments
3. a missing value raises instead of leaking an empty field onto the wire
"""
from datetime import datetime

import pytest
from jinja2 import TemplateNotFound

from ereferral.services.templates import (
    TEMPLATES,
    UnresolvedPlaceholderError,
    hl7_timestamp,
    message_id,
    placeholders,
    render_template,
)

REPORT_LINE = {"id": "INV-1", "mbo": "987654321", "hasSupplemental": "false", "amount": "15.00", "referralId": "DIRECT"}


def _values_for(name, **overrides):
    values = {key: f"v-{key}" for key in placeholders(name)}
    if "invoices" in values:
        values["invoices"] = [REPORT_LINE]
    values.update(overrides)
    return values


class TestRenderTemplate:

    @pytest.mark.parametrize("name", sorted(TEMPLATES))
    def test_no_placeholder_survives(self, name):
        rendered = render_template(name, _values_for(name))
        assert "{{" not in rendered
        assert "{%" not in rendered
        assert "v-" in rendered

    def test_storno_carries_target_and_reason(self):
        rendered = render_template(
            "STORNO_MESSAGE", _values_for("STORNO_MESSAGE", targetMessageId="REF-42", reasonCode="CANCELLATION")
        )
        assert "REF-42" in rendered
        assert "CANCELLATION" in rendered

    def test_values_are_escaped(self):
        rendered = render_template("SEND_REFERRAL", _values_for("SEND_REFERRAL", patientName='Ana <"K"> & co'))
        assert "Ana &lt;&#34;K&#34;&gt; &amp; co" in rendered
        assert "<\"K\">" not in rendered

    def test_batch_content_is_inserted_verbatim(self):
        rendered = render_template("BATCH_WRAPPER", _values_for("BATCH_WRAPPER", batchContent="<invoice/>"))
        assert "<invoice/>" in rendered

    def test_none_renders_empty(self):
        rendered = render_template("SEND_FINDING", _values_for("SEND_FINDING", therapy=None))
        assert "<therapy></therapy>" in rendered

    def test_missing_value_raises(self):
        values = _values_for("TAKEOVER_REFERRAL")
        del values["doctorId"]
        with pytest.raises(UnresolvedPlaceholderError) as excinfo:
            render_template("TAKEOVER_REFERRAL", values)
        assert excinfo.value.missing == ["doctorId"]
        assert isinstance(excinfo.value, KeyError)

    def test_missing_field_of_a_report_line_raises(self):
        line = dict(REPORT_LINE)
        del line["amount"]
        with pytest.raises(UnresolvedPlaceholderError):
            render_template("HZZO_BATCH_REPORT", _values_for("HZZO_BATCH_REPORT", invoices=[line]))

    def test_report_has_one_entry_per_invoice(self):
        second = dict(REPORT_LINE, id="INV-2", referralId="REF-9")
        rendered = render_template("HZZO_BATCH_REPORT", _values_for("HZZO_BATCH_REPORT", invoices=[REPORT_LINE, second]))
        assert rendered.startswith('<?xml version="1.0"')
        assert rendered.count("<Invoice id=") == 2
        assert "<ReferralId>REF-9</ReferralId>" in rendered

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFound):
            render_template("NO_SUCH_TEMPLATE", {})


class TestHelpers:

    def test_hl7_timestamp_format(self):
        assert hl7_timestamp(datetime(2024, 3, 5, 7, 8, 9)) == "20240305070809"

    def test_message_ids_are_unique(self):
        first, second = message_id("MSG-X"), message_id("MSG-X")
        assert first.startswith("MSG-X-")
        assert first != second
