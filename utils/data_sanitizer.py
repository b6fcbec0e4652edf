"""
Data Sanitization Module
Masks bearer secrets, auth headers and contact data before anything reaches a log,
and redacts what the external (token) pathway is allowed to show
"""

import re
import json
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class DataSanitizer:
    """Sanitization for logs and external-facing payloads"""

    SENSITIVE_PATTERNS = {
        "bearer": re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]{8,})"),
        "token_param": re.compile(r"(?i)([?&]token=)([^&#\s]+)"),
        "token_field": re.compile(r'(?i)("?(?:token|secret)"?\s*[:=]\s*"?)([A-Za-z0-9._~+/=-]{12,})'),
        "email": re.compile(r"\b([A-Za-z0-9._%+-]{1,2})[A-Za-z0-9._%+-]*(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b"),
    }

    # Dictionary keys whose values never appear in logs
    SENSITIVE_FIELDS = {
        "token",
        "secret",
        "authorization",
        "x-external-token",
        "idempotency-key",
        "access_token",
        "password",
    }

    # Keys masked partially (kept recognisable for support)
    CONTACT_FIELDS = {"issued_to_email", "email"}

    @classmethod
    def mask_secret(cls, secret: Optional[str], show_chars: int = 4) -> str:
        """Mask a bearer secret, keeping only a short prefix for correlation"""
        if not secret:
            return "[NO_TOKEN]"
        if len(secret) <= show_chars * 2:
            return "[REDACTED]"
        return f"[TOKEN:{secret[:show_chars]}***]"

    @classmethod
    def mask_email(cls, email: Optional[str]) -> str:
        if not email or "@" not in email:
            return "[REDACTED]"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    @classmethod
    def sanitize_text(cls, text: Any) -> str:
        """Mask secrets and addresses embedded in free text"""
        sanitized = text if isinstance(text, str) else str(text)
        for name, pattern in cls.SENSITIVE_PATTERNS.items():
            if name == "email":
                sanitized = pattern.sub(lambda m: f"{m.group(1)}***{m.group(2)}", sanitized)
            else:
                sanitized = pattern.sub(lambda m: f"{m.group(1)}[REDACTED]", sanitized)
        return sanitized

    @classmethod
    def sanitize_dict(cls, data: Mapping[str, Any], deep: bool = True) -> Dict[str, Any]:
        """Copy of a mapping with sensitive values masked"""
        sanitized = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if key_lower in cls.SENSITIVE_FIELDS:
                sanitized[key] = "[REDACTED]"
            elif key_lower in cls.CONTACT_FIELDS and isinstance(value, str):
                sanitized[key] = cls.mask_email(value)
            elif deep and isinstance(value, Mapping):
                sanitized[key] = cls.sanitize_dict(value, deep=True)
            elif deep and isinstance(value, list):
                sanitized[key] = cls.sanitize_list(value, deep=True)
            elif isinstance(value, str):
                sanitized[key] = cls.sanitize_text(value)
            else:
                sanitized[key] = value
        return sanitized

    @classmethod
    def sanitize_list(cls, data: List[Any], deep: bool = True) -> List[Any]:
        sanitized = []
        for item in data:
            if deep and isinstance(item, Mapping):
                sanitized.append(cls.sanitize_dict(item, deep=True))
            elif deep and isinstance(item, list):
                sanitized.append(cls.sanitize_list(item, deep=True))
            elif isinstance(item, str):
                sanitized.append(cls.sanitize_text(item))
            else:
                sanitized.append(item)
        return sanitized

    @classmethod
    def sanitize_headers(cls, headers: Mapping[str, str]) -> Dict[str, str]:
        return {
            name: ("[REDACTED]" if name.lower() in cls.SENSITIVE_FIELDS else value)
            for name, value in headers.items()
        }

    @classmethod
    def strip_query_param(cls, url: str, param: str = "token") -> str:
        """URL with one query parameter removed (other parameters kept in order)"""
        parts = urlsplit(url)
        kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))

    # ------------------------------------------------------------------
    # External pathway redaction
    # ------------------------------------------------------------------

    @classmethod
    def redact_external_summary(cls, summary: Mapping[str, Any]) -> Dict[str, Any]:
        """Only the fields an anonymous bearer may see about an escrow"""
        milestones = []
        for milestone in summary.get("milestones") or []:
            milestones.append({
                "milestone_idx": milestone.get("milestone_idx"),
                "label": milestone.get("label"),
                "amount": milestone.get("amount"),
                "status": milestone.get("status"),
                "requires_proof": milestone.get("requires_proof"),
                "last_proof_status": milestone.get("last_proof_status"),
            })
        return {
            "escrow_id": summary.get("escrow_id"),
            "status": summary.get("status"),
            "currency": summary.get("currency"),
            "amount_total": summary.get("amount_total"),
            "milestones": milestones,
        }

    @classmethod
    def redact_external_proof(cls, proof: Mapping[str, Any]) -> Dict[str, Any]:
        """Proof status/submission as shown to the bearer; storage details dropped"""
        redacted = {
            "proof_id": proof.get("proof_id", proof.get("id")),
            "status": proof.get("status"),
            "escrow_id": proof.get("escrow_id"),
            "milestone_idx": proof.get("milestone_idx"),
        }
        if proof.get("submitted_at"):
            redacted["submitted_at"] = proof["submitted_at"]
        if "reviewed_at" in proof:
            redacted["reviewed_at"] = proof.get("reviewed_at")
        if proof.get("created_at"):
            redacted["created_at"] = proof["created_at"]
        redacted["terminal"] = bool(proof.get("terminal", False))
        return redacted


# Global instance for application use
data_sanitizer = DataSanitizer()


def sanitize_for_log(data: Any) -> str:
    """Sanitize any data for safe logging"""
    if isinstance(data, Mapping):
        return json.dumps(data_sanitizer.sanitize_dict(data), default=str)
    elif isinstance(data, list):
        return json.dumps(data_sanitizer.sanitize_list(data), default=str)
    else:
        return data_sanitizer.sanitize_text(str(data))


def mask_token_safe(secret: Optional[str]) -> str:
    """Safely mask a bearer secret for any logging"""
    return data_sanitizer.mask_secret(secret)
