"""
Pytest configuration and fixtures for LoginGuard U2F tests
"""

import os
import json
import hashlib
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional
from datetime import datetime, timezone, timedelta

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.utils import websafe_encode, websafe_decode

from loginguard.common.config import U2FPluginConfig
from loginguard.common.database import DatabaseManager
from loginguard.common.models import MethodRecord
from loginguard.common.session import InMemorySessionBackend
from loginguard.common.u2f import U2FServer
from loginguard.tfa.catalog import RegistrationCatalog
from loginguard.tfa.u2f_method import U2FMethod

APP_ID = "https://example.com"


# ========================================
# Software U2F authenticator
# ========================================

def make_certificate(
    subject_key: ec.EllipticCurvePrivateKey,
    common_name: str,
    issuer_key: Optional[ec.EllipticCurvePrivateKey] = None,
    issuer_name: Optional[x509.Name] = None
) -> x509.Certificate:
    """Build an X.509 certificate (self-signed unless an issuer is given)"""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
    )
    return builder.sign(issuer_key or subject_key, hashes.SHA256())


class SoftwareU2FDevice:
    """
    Minimal U2F authenticator implemented with cryptography

    Produces the same JSON the browser U2F API returns for register / sign.
    """

    def __init__(
        self,
        attestation_key: Optional[ec.EllipticCurvePrivateKey] = None,
        attestation_cert: Optional[x509.Certificate] = None
    ):
        self.attestation_key = attestation_key or ec.generate_private_key(ec.SECP256R1())
        self.attestation_cert = attestation_cert or make_certificate(self.attestation_key, "Software U2F Device")
        self.keys: Dict[bytes, List] = {}

    def register(
        self,
        request: Dict,
        key_handle: Optional[bytes] = None,
        origin: Optional[str] = None,
        typ: str = "navigator.id.finishEnrollment"
    ) -> Dict[str, str]:
        """Answer a registration client payload (appId + registerRequests)"""
        app_id = request["appId"]
        challenge = request["registerRequests"][0]["challenge"]
        client_data = json.dumps({
            "typ": typ,
            "challenge": challenge,
            "origin": origin or app_id,
        }).encode("utf-8")

        private_key = ec.generate_private_key(ec.SECP256R1())
        key_handle = key_handle or os.urandom(32)
        public_key = private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint
        )
        cert_der = self.attestation_cert.public_bytes(serialization.Encoding.DER)

        signed_data = (
            b"\x00"
            + hashlib.sha256(app_id.encode("utf-8")).digest()
            + hashlib.sha256(client_data).digest()
            + key_handle
            + public_key
        )
        signature = self.attestation_key.sign(signed_data, ec.ECDSA(hashes.SHA256()))
        registration_data = b"\x05" + public_key + bytes([len(key_handle)]) + key_handle + cert_der + signature

        self.keys[key_handle] = [private_key, 0]

        return {
            "registrationData": websafe_encode(registration_data),
            "clientData": websafe_encode(client_data),
            "version": "U2F_V2",
        }

    def authenticate(
        self,
        request: Dict,
        counter: Optional[int] = None,
        origin: Optional[str] = None,
        key_handle: Optional[bytes] = None
    ) -> Dict[str, str]:
        """Answer an authentication client payload (appId + challenge + signRequests)"""
        app_id = request["appId"]
        challenge = request["challenge"]

        selected = None
        for sign_request in request["signRequests"]:
            candidate = websafe_decode(sign_request["keyHandle"])
            if candidate in self.keys and (key_handle is None or candidate == key_handle):
                selected = candidate
                break
        if selected is None:
            raise ValueError("Device holds none of the requested keys")

        private_key, stored_counter = self.keys[selected]
        counter = stored_counter + 1 if counter is None else counter
        self.keys[selected][1] = counter

        client_data = json.dumps({
            "typ": "navigator.id.getAssertion",
            "challenge": challenge,
            "origin": origin or app_id,
        }).encode("utf-8")

        prefix = b"\x01" + counter.to_bytes(4, "big")
        signed_data = (
            hashlib.sha256(app_id.encode("utf-8")).digest()
            + prefix
            + hashlib.sha256(client_data).digest()
        )
        signature = private_key.sign(signed_data, ec.ECDSA(hashes.SHA256()))

        return {
            "keyHandle": websafe_encode(selected),
            "clientData": websafe_encode(client_data),
            "signatureData": websafe_encode(prefix + signature),
        }


# ========================================
# Fixtures
# ========================================

@pytest.fixture
def temp_db_path():
    """
    Temporary database path for tests
    """
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = temp_file.name
    temp_file.close()
    yield db_path
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
async def db_manager(temp_db_path) -> AsyncGenerator[DatabaseManager, None]:
    """
    DatabaseManager instance with temporary SQLite database
    """
    db_url = f"sqlite+aiosqlite:///{temp_db_path}"
    manager = DatabaseManager(database_url=db_url)
    await manager.init_db()
    yield manager
    await manager.engine.dispose()


@pytest.fixture
def catalog(db_manager) -> RegistrationCatalog:
    return RegistrationCatalog(db_manager)


@pytest.fixture
def session_backend() -> InMemorySessionBackend:
    return InMemorySessionBackend()


@pytest.fixture
def session(session_backend):
    """In-memory session context for a single browser session"""
    return session_backend.session("test-session")


@pytest.fixture
def u2f_config() -> U2FPluginConfig:
    return U2FPluginConfig(app_id=APP_ID)


@pytest.fixture
def u2f_server() -> U2FServer:
    return U2FServer(APP_ID)


@pytest.fixture
def u2f_method(u2f_config, catalog) -> U2FMethod:
    return U2FMethod(u2f_config, catalog)


@pytest.fixture
def device() -> SoftwareU2FDevice:
    return SoftwareU2FDevice()


@pytest.fixture
def device_factory():
    """Factory for additional software authenticators"""
    return SoftwareU2FDevice


@pytest.fixture
def certificate_factory():
    return make_certificate


@pytest.fixture
def registered_record(catalog, u2f_server, device):
    """
    Create a u2f record for a user holding one freshly registered key

    Usage:
        record = await registered_record("user-1")
    """
    async def _create(user_id: str = "user-1", title: str = "Security key") -> MethodRecord:
        challenge = u2f_server.begin_registration([])
        registration = u2f_server.complete_registration(
            challenge, device.register(challenge.client_payload())
        )
        record = await catalog.create_record(user_id, "u2f", title)
        return await catalog.save_options(record.id, {"registrations": [registration.model_dump()]})

    return _create
