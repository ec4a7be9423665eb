"""
Pytest configuration and shared fixtures.
"""
import pytest
import asyncio
import itertools
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Generator

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base
from mdm_client import MDMClient
from observability import metrics


class FakeMDMServer:
    """
    In-process stand-in for the upstream MDM server, served through
    httpx.MockTransport. Records every request it receives.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.devices: object = []
        self.push_status = 200
        self.unreachable_udids: set[str] = set()
        self.fail_commands = False
        self.inventory_status = 200
        self._command_ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/push/"):
            udid = path.rsplit("/", 1)[-1]
            if udid in self.unreachable_udids:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(self.push_status, json={"status": ""})

        if path == "/v1/devices":
            return httpx.Response(self.inventory_status, json=self.devices)

        if path == "/v1/commands":
            if self.fail_commands:
                raise httpx.ConnectError("connection refused", request=request)
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "payload": {
                    "command_uuid": f"cmd-{next(self._command_ids)}",
                    "request_type": body["request_type"],
                }
            })

        return httpx.Response(404)

    def requests_to(self, prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(prefix)]

    def commands(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests_to("/v1/commands")]


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Session factory bound to a fresh in-memory SQLite database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def mdm_server() -> FakeMDMServer:
    return FakeMDMServer()


@pytest.fixture(scope="function")
def mdm_client(mdm_server: FakeMDMServer) -> Generator[MDMClient, None, None]:
    client = MDMClient(
        "http://mdm.test",
        "supersecret",
        transport=httpx.MockTransport(mdm_server.handler),
    )
    yield client
    asyncio.run(client.aclose())


@pytest.fixture(scope="function")
def signing_identity(tmp_path):
    """
    Self-signed certificate and key written to disk.
    Returns: (cert_path, key_path, der_bytes)
    """
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Director Test Signer")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )

    cert_path = tmp_path / "signing.pem"
    key_path = tmp_path / "signing.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return str(cert_path), str(key_path), cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="function")
def enrollment_profile_path(tmp_path):
    import plistlib

    profile = {
        "PayloadType": "Configuration",
        "PayloadUUID": "9F3C1E2A-0000-4000-8000-ENROLLMENT01",
        "PayloadIdentifier": "com.example.mdm.enrollment",
        "PayloadDisplayName": "MDM Enrollment",
        "PayloadVersion": 1,
        "PayloadContent": [
            {
                "PayloadType": "com.apple.mdm",
                "PayloadUUID": "9F3C1E2A-0000-4000-8000-MDMPAYLOAD01",
                "PayloadIdentifier": "com.example.mdm.enrollment.mdm",
                "PayloadVersion": 1,
                "ServerURL": "https://mdm.example.com/mdm/connect",
                "Topic": "com.apple.mgmt.External.example",
            }
        ],
    }
    path = tmp_path / "enroll.mobileconfig"
    path.write_bytes(plistlib.dumps(profile))
    return str(path)


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs
