"""
HL7 v3 message templates for outbound Central System payloads.

Templates are Jinja sources held in ``TEMPLATES`` and served by a
``DictLoader``.  The environment autoescapes values for XML and uses
``StrictUndefined``, so a missing value fails the render instead of
reaching the wire as an empty field.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from jinja2 import DictLoader, Environment, StrictUndefined, UndefinedError, meta

from ereferral.models.database import utcnow


class UnresolvedPlaceholderError(KeyError):
    """Raised when a template is rendered without a value it needs."""

    def __init__(self, template_name: str, missing: Iterable[str]):
        self.template_name = template_name
        self.missing = sorted(set(missing))
        super().__init__(f"Template {template_name} has unresolved placeholders: {', '.join(self.missing)}")


TEMPLATES: Dict[str, str] = {
    # POLB_IN990031: referral submission
    "SEND_REFERRAL": """
<POLB_IN990031 xmlns="urn:hl7-org:v3">
    <id extension="{{messageId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="POLB_IN990031" root="2.16.840.1.113883.1.6"/>
    <processingCode code="P"/>
    <processingModeCode code="T"/>
    <acceptAckCode code="AL"/>
    <sender typeCode="SND">
        <device classCode="DEV" determinerCode="INSTANCE">
            <id extension="{{senderId}}" root="2.16.840.1.113883.2.7.2.1"/>
        </device>
    </sender>
    <controlActProcess classCode="ACTN" moodCode="EVN">
        <subject typeCode="SUBJ">
            <referral classCode="PCPR" moodCode="INT">
                <code code="{{referralType}}" codeSystem="2.16.840.1.113883.2.7.3.2"/>
                <statusCode code="active"/>
                <recordTarget typeCode="RCT">
                    <patient classCode="PAT">
                        <id extension="{{patientMbo}}" root="2.16.840.1.113883.2.7.4.1"/>
                        <patientPerson>
                            <name>{{patientName}}</name>
                        </patientPerson>
                    </patient>
                </recordTarget>
                <author typeCode="AUT">
                    <assignedEntity>
                        <id extension="{{doctorId}}" root="2.16.840.1.113883.2.7.5.1"/>
                    </assignedEntity>
                </author>
                <reason>
                    <observation classCode="OBS" moodCode="EVN">
                        <value code="{{diagnosisCode}}" codeSystem="2.16.840.1.113883.6.3"/>
                    </observation>
                </reason>
                <component>
                    <procedure code="{{procedureCode}}" department="{{targetDepartment}}"/>
                </component>
            </referral>
        </subject>
    </controlActProcess>
</POLB_IN990031>
""".strip(),
    # POLB_IN990029: takeover request
    "TAKEOVER_REFERRAL": """
<POLB_IN990029 xmlns="urn:hl7-org:v3">
    <id extension="{{messageId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="POLB_IN990029" root="2.16.840.1.113883.1.6"/>
    <controlActProcess classCode="ACTN" moodCode="EVN">
        <subject typeCode="SUBJ">
            <takeoverRequest classCode="ACT" moodCode="RQO">
                <id extension="{{referralId}}" root="2.16.840.1.113883.2.7.3.1"/>
                <performer typeCode="PRF">
                    <assignedEntity>
                        <id extension="{{doctorId}}" root="2.16.840.1.113883.2.7.5.1"/>
                        <representedOrganization>
                            <id extension="{{institutionCode}}" root="2.16.840.1.113883.2.7.5.2"/>
                        </representedOrganization>
                    </assignedEntity>
                </performer>
            </takeoverRequest>
        </subject>
    </controlActProcess>
</POLB_IN990029>
""".strip(),
    # FICR_IN990030: storno (reversal) request
    "STORNO_MESSAGE": """
<FICR_IN990030 xmlns="urn:hl7-org:v3">
    <id extension="{{messageId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="FICR_IN990030" root="2.16.840.1.113883.1.6"/>
    <controlActProcess classCode="ACTN" moodCode="EVN">
        <subject typeCode="SUBJ">
            <stornoRequest classCode="ACT" moodCode="RQO">
                <targetMessageId extension="{{targetMessageId}}" root="2.16.840.1.113883.2.7.1.1"/>
                <reasonCode code="{{reasonCode}}" codeSystem="2.16.840.1.113883.2.7.7.1"/>
            </stornoRequest>
        </subject>
    </controlActProcess>
</FICR_IN990030>
""".strip(),
    # REPC_IN990002: specialist finding
    "SEND_FINDING": """
<REPC_IN990002 xmlns="urn:hl7-org:v3">
    <id extension="{{messageId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="REPC_IN990002" root="2.16.840.1.113883.1.6"/>
    <controlActProcess classCode="ACTN" moodCode="EVN">
        <subject typeCode="SUBJ">
            <finding classCode="DOCCLIN" moodCode="EVN">
                <id extension="{{findingId}}" root="2.16.840.1.113883.2.7.9.1"/>
                <recordTarget>
                    <patient><id extension="{{patientMbo}}" root="2.16.840.1.113883.2.7.4.1"/></patient>
                </recordTarget>
                <inFulfillmentOf>
                    <referral><id extension="{{referralId}}" root="2.16.840.1.113883.2.7.3.1"/></referral>
                </inFulfillmentOf>
                <anamnesis>{{anamnesis}}</anamnesis>
                <statusPraesens>{{statusPraesens}}</statusPraesens>
                <therapy>{{therapy}}</therapy>
            </finding>
        </subject>
    </controlActProcess>
</REPC_IN990002>
""".strip(),
    # POFM_IN990001: institutional invoice
    "SEND_INVOICE": """
<POFM_IN990001 xmlns="urn:hl7-org:v3">
    <id extension="{{messageId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="POFM_IN990001" root="2.16.840.1.113883.1.6"/>
    <controlActProcess classCode="ACTN" moodCode="EVN">
        <subject typeCode="SUBJ">
            <invoice classCode="INVOICE" moodCode="EVN">
                <id extension="{{invoiceId}}" root="2.16.840.1.113883.2.7.8.1"/>
                <code code="{{invoiceType}}" codeSystem="2.16.840.1.113883.2.7.8.2"/>
                <totalAmt value="{{amount}}" currency="EUR"/>
                <pertinentInformation typeCode="PERT">
                    <referral classCode="PCPR" moodCode="INT">
                        <id extension="{{referralId}}" root="2.16.840.1.113883.2.7.3.1"/>
                    </referral>
                </pertinentInformation>
            </invoice>
        </subject>
    </controlActProcess>
</POFM_IN990001>
""".strip(),
    # MCCI_IN000002: batch envelope
    "BATCH_WRAPPER": """
<MCCI_IN000002 xmlns="urn:hl7-org:v3">
    <id extension="{{batchId}}" root="2.16.840.1.113883.2.7.1.1"/>
    <creationTime value="{{timestamp}}"/>
    <interactionId extension="MCCI_IN000002" root="2.16.840.1.113883.1.6"/>
    <content>
        {{ batchContent|safe }}
    </content>
</MCCI_IN000002>
""".strip(),
    # Fund batch report, exported once a batch has been accepted
    "HZZO_BATCH_REPORT": """
<?xml version="1.0" encoding="UTF-8"?>
<HZZO_Report type="{{ batchType }}" batchId="{{ batchId }}">
    <Header>
        <InstitutionCode>{{ institutionCode }}</InstitutionCode>
        <InstitutionName>{{ institutionName }}</InstitutionName>
        <SystemName>{{ systemName }}</SystemName>
        <Timestamp>{{ timestamp }}</Timestamp>
        <TotalAmount>{{ totalAmount }}</TotalAmount>
    </Header>
    <Invoices>
{% for invoice in invoices %}
        <Invoice id="{{ invoice.id }}">
            <Patient MBO="{{ invoice.mbo }}">
                <HasSupplemental>{{ invoice.hasSupplemental }}</HasSupplemental>
            </Patient>
            <Amount>{{ invoice.amount }}</Amount>
            <ReferralId>{{ invoice.referralId }}</ReferralId>
        </Invoice>
{% endfor %}
    </Invoices>
</HZZO_Report>
""".strip(),
}


def _blank_none(value):
    return "" if value is None else value


env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=True,
    undefined=StrictUndefined,
    finalize=_blank_none,
    trim_blocks=True,
    lstrip_blocks=True,
)


def hl7_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a timestamp as HL7 ``YYYYMMDDHHMMSS``."""
    return (moment or utcnow()).strftime("%Y%m%d%H%M%S")


def message_id(prefix: str = "MSG") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def placeholders(name: str) -> set:
    """Top-level variables the named template reads."""
    return meta.find_undeclared_variables(env.parse(TEMPLATES[name]))


def render_template(name: str, values: Mapping[str, object]) -> str:
    """Render the named template with ``values``.

    ``None`` values render as empty strings.  Raises
    ``jinja2.TemplateNotFound`` for an unknown template and
    UnresolvedPlaceholderError when a value is missing.
    """
    template = env.get_template(name)
    missing = placeholders(name) - set(values)
    if missing:
        raise UnresolvedPlaceholderError(name, missing)
    try:
        return template.render(**values)
    except UndefinedError as exc:
        raise UnresolvedPlaceholderError(name, [str(exc)]) from exc
