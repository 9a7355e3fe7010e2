from __future__ import annotations

import re
import secrets
import string
from urllib.parse import quote

PROJECT_PREFIX = "orgcluster"
CLUSTER_PREFIX = "forms"
DATABASE_USER_PREFIX = "orgcluster"

PASSWORD_ALPHABET = string.ascii_letters + string.digits
DEFAULT_PASSWORD_LENGTH = 24

_SRV_PREFIX_RE = re.compile(r"^mongodb\+srv://")


def generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


def project_name_for_org(organization_id: str) -> str:
    """Deterministic project name, so a later attempt finds the same project."""
    return f"{PROJECT_PREFIX}-{organization_id[-8:]}"


def cluster_name_for_org(organization_id: str) -> str:
    return f"{CLUSTER_PREFIX}-{organization_id[-6:]}"


def database_username_for_org(organization_id: str) -> str:
    return f"{DATABASE_USER_PREFIX}-{organization_id[-8:]}"


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    if length < 12:
        raise ValueError("password length must be at least 12")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def build_connection_string(srv_address: str, username: str, password: str, database: str) -> str:
    """Interpolate credentials into the cluster's SRV template.

    ``srv_address`` is the ``standardSrv`` value reported by the control plane,
    e.g. ``mongodb+srv://forms-abc123.x1y2z.mongodb.net``.
    """
    if not srv_address:
        raise ValueError("srv_address is required")
    host = _SRV_PREFIX_RE.sub("", srv_address).rstrip("/")
    user = quote(username, safe="")
    secret = quote(password, safe="")
    return f"mongodb+srv://{user}:{secret}@{host}/{database}?retryWrites=true&w=majority"
