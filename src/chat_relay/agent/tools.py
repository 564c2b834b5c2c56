import re

_LABEL_RE = re.compile(r"^[A-Za-z0-9-]+$")


def is_valid_email_format(value: str) -> bool:
    """Practical format check for an email address. Not a deliverability check."""
    value = (value or "").strip()
    if not value or len(value) > 254 or re.search(r"\s", value):
        return False
    if value.count("@") != 1:
        return False
    local, domain = value.split("@")
    if not local or not domain or len(local) > 64 or len(domain) > 253:
        return False
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False
    if "." not in domain or domain.startswith(".") or domain.endswith(".") or ".." in domain:
        return False
    for label in domain.split("."):
        if not label or len(label) > 63:
            return False
        if label.startswith("-") or label.endswith("-") or not _LABEL_RE.match(label):
            return False
    return True


def validate_email(args: dict) -> dict:
    """Body of the native ``email_validator`` tool."""
    email = str(args.get("email") or "").strip()
    if is_valid_email_format(email):
        return {"success": True, "email": email.lower(), "message": "Email is valid"}
    return {"success": False, "email": email, "message": "Email is not valid"}
