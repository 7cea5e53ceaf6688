from typing import Any, Dict, Set


# Rule payloads can be large and may embed generator prompts; never log them.
SENSITIVE_FIELDS = {
    "password", "secret", "token", "api_key", "credential",
    "rules_payload", "previous_rules_json", "redis_url",
}


def redact_dict(data: Dict[str, Any], sensitive_fields: Set[str] = SENSITIVE_FIELDS) -> Dict[str, Any]:
    redacted = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(sensitive in key_lower for sensitive in sensitive_fields):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_dict(value, sensitive_fields)
        elif isinstance(value, (list, tuple)):
            redacted[key] = [
                redact_dict(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            redacted[key] = value

    return redacted
