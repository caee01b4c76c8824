from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from src.chartguard.domain.models.alert import Alert
from src.chartguard.domain.models.record_section import RecordSection, SectionName
from src.chartguard.domain.models.verification import VerificationItem
from src.chartguard.services.encryption.envelope import EncryptionEnvelope


def encrypt_section_content(envelope: EncryptionEnvelope, section: RecordSection) -> str:
    payload = {
        "original": section.original,
        "subsections": {
            key: [entry.model_dump(mode="json") for entry in entries]
            for key, entries in section.subsections.items()
        },
    }
    return envelope.encrypt_json(payload)


def decrypt_section(
    envelope: EncryptionEnvelope,
    *,
    patient_id: str,
    name: SectionName,
    version: int,
    updated_at: Optional[datetime],
    enc_content: str,
) -> RecordSection:
    content: Dict[str, Any] = envelope.decrypt_json(enc_content)
    return RecordSection.model_validate(
        {
            "patient_id": patient_id,
            "name": name,
            "version": version,
            "updated_at": updated_at,
            "original": content.get("original", ""),
            "subsections": content.get("subsections", {}),
        }
    )


def verification_to_row(envelope: EncryptionEnvelope, item: VerificationItem) -> Dict[str, Any]:
    row = item.model_dump()
    row["enc_label"] = envelope.encrypt(row.pop("label"))
    return row


def verification_from_row(envelope: EncryptionEnvelope, row: Dict[str, Any]) -> VerificationItem:
    data = dict(row)
    data["label"] = envelope.decrypt(data.pop("enc_label"))
    return VerificationItem.model_validate(data)


def alert_to_row(envelope: EncryptionEnvelope, alert: Alert) -> Dict[str, Any]:
    row = alert.model_dump()
    row["enc_message"] = envelope.encrypt(row.pop("message"))
    row["enc_resolution_note"] = envelope.encrypt_optional(row.pop("resolution_note"))
    return row


def alert_from_row(envelope: EncryptionEnvelope, row: Dict[str, Any]) -> Alert:
    data = dict(row)
    data["message"] = envelope.decrypt(data.pop("enc_message"))
    data["resolution_note"] = envelope.decrypt_optional(data.pop("enc_resolution_note"))
    return Alert.model_validate(data)
