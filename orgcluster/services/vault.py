from __future__ import annotations

from abc import ABC, abstractmethod
import base64
import hashlib
import logging
import re
import secrets
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet
from sqlmodel import Session

from orgcluster.models import StoredSecretORM, utcnow
from orgcluster.services.constants import SECRET_STATUS_ACTIVE, SECRET_STATUS_DELETED
from orgcluster.services.errors import NotConfiguredException, SecretVaultError
from orgcluster.settings import Settings

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9._=-]+")


class SecretVault(ABC):
    """Stores a plaintext credential and hands back an opaque reference."""

    @abstractmethod
    def store(self, plaintext: str, *, organization_id: str, name: str, description: str = "") -> str:
        raise NotImplementedError

    @abstractmethod
    def delete(self, secret_ref: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def exists(self, secret_ref: str) -> bool:
        raise NotImplementedError


def _fernet_from_key(key: str) -> Fernet:
    derived = base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest())
    return Fernet(derived)


class DatabaseSecretVault(SecretVault):
    """Fernet-encrypted secrets kept in the ``stored_secret`` table."""

    def __init__(self, session: Session, *, encryption_key: str) -> None:
        if not encryption_key:
            raise NotConfiguredException("Vault encryption key is not configured")
        self._session = session
        self._cipher = _fernet_from_key(encryption_key)

    def store(self, plaintext: str, *, organization_id: str, name: str, description: str = "") -> str:
        if not plaintext:
            raise SecretVaultError("secret value is required")
        secret = StoredSecretORM(
            organization_id=organization_id,
            name=name,
            description=description or None,
            ciphertext=self._cipher.encrypt(plaintext.encode()).decode(),
        )
        self._session.add(secret)
        self._session.commit()
        self._session.refresh(secret)
        logger.info("Stored secret secret_ref=%s organization_id=%s", secret.secret_ref, organization_id)
        return secret.secret_ref

    def delete(self, secret_ref: str) -> None:
        secret = self._session.get(StoredSecretORM, secret_ref)
        if secret is None or secret.status == SECRET_STATUS_DELETED:
            logger.debug("Secret already absent: secret_ref=%s", secret_ref)
            return
        secret.status = SECRET_STATUS_DELETED
        secret.ciphertext = ""
        secret.deleted_at = utcnow()
        self._session.add(secret)
        self._session.commit()
        logger.info("Deleted secret secret_ref=%s", secret_ref)

    def exists(self, secret_ref: str) -> bool:
        secret = self._session.get(StoredSecretORM, secret_ref)
        return secret is not None and secret.status == SECRET_STATUS_ACTIVE

    def reveal(self, secret_ref: str) -> str:
        secret = self._session.get(StoredSecretORM, secret_ref)
        if secret is None or secret.status != SECRET_STATUS_ACTIVE:
            raise SecretVaultError("secret not found")
        return self._cipher.decrypt(secret.ciphertext.encode()).decode()


def _sanitize_segment(value: str) -> str:
    return _UNSAFE_SEGMENT_RE.sub("-", value.strip()).strip("-")


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class AwsSecretsManagerVault(SecretVault):
    """Secrets kept in AWS Secrets Manager; the reference is the secret ARN."""

    def __init__(self, *, region: str = "", name_prefix: str = "/orgcluster", client: Any = None) -> None:
        if client is None:
            client = boto3.client("secretsmanager", region_name=region) if region else boto3.client("secretsmanager")
        self._client = client
        self._prefix = name_prefix.rstrip("/") or "/orgcluster"

    def _secret_name(self, organization_id: str, name: str) -> str:
        suffix = secrets.token_hex(4)
        return f"{self._prefix}/tenants/{_sanitize_segment(organization_id)}/{_sanitize_segment(name)}-{suffix}"

    def store(self, plaintext: str, *, organization_id: str, name: str, description: str = "") -> str:
        if not plaintext:
            raise SecretVaultError("secret value is required")
        secret_name = self._secret_name(organization_id, name)
        kwargs: dict[str, Any] = {
            "Name": secret_name,
            "SecretString": plaintext,
            "Tags": [
                {"Key": "orgcluster:managed", "Value": "true"},
                {"Key": "orgcluster:organization_id", "Value": organization_id},
            ],
        }
        if description:
            kwargs["Description"] = description
        try:
            response = self._client.create_secret(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise SecretVaultError(f"secret write failed: {exc.__class__.__name__}") from exc
        secret_ref = str(response.get("ARN") or secret_name)
        logger.info("Stored secret secret_ref=%s organization_id=%s", secret_ref, organization_id)
        return secret_ref

    def delete(self, secret_ref: str) -> None:
        try:
            self._client.delete_secret(SecretId=secret_ref, ForceDeleteWithoutRecovery=True)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                logger.debug("Secret already absent: secret_ref=%s", secret_ref)
                return
            raise SecretVaultError(f"secret delete failed: {_error_code(exc) or exc}") from exc
        except BotoCoreError as exc:
            raise SecretVaultError(f"secret delete failed: {exc.__class__.__name__}") from exc
        logger.info("Deleted secret secret_ref=%s", secret_ref)

    def exists(self, secret_ref: str) -> bool:
        try:
            response = self._client.describe_secret(SecretId=secret_ref)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            raise SecretVaultError(f"secret lookup failed: {_error_code(exc) or exc}") from exc
        except BotoCoreError as exc:
            raise SecretVaultError(f"secret lookup failed: {exc.__class__.__name__}") from exc
        return not response.get("DeletedDate")


def build_secret_vault(settings: Settings, session: Session) -> SecretVault:
    if settings.secret_backend == "aws":
        return AwsSecretsManagerVault(region=settings.aws_region, name_prefix=settings.secret_name_prefix)
    if settings.secret_backend == "database":
        return DatabaseSecretVault(session, encryption_key=settings.vault_encryption_key)
    raise NotConfiguredException(f"Unsupported secret backend: {settings.secret_backend}")
