"""
Shared fixtures: every test gets its own CA paths, session directory and
mitmproxy confdir under pytest's tmp_path.
"""

import pytest

from sessionproxy.core.config import ApplicationConfig
from sessionproxy.interception.certificate_manager import CertificateAuthority
from sessionproxy.interception.session_log import SessionLogWriter


@pytest.fixture
def app_config(tmp_path):
    return ApplicationConfig(
        tmp_path / "config" / "missing.yaml",
        proxy={"confdir": tmp_path / "mitmproxy", "port": 0},
        certificate={
            "organization": "Acme",
            "common_name": "Acme CA",
            "valid_days": 365,
            "cert_path": tmp_path / "certs" / "ca.crt",
            "key_path": tmp_path / "certs" / "ca.key",
        },
        logging={"session_dir": tmp_path / "sessions", "max_body_size": 16},
    )


@pytest.fixture
def authority(app_config):
    return CertificateAuthority.from_config(app_config.certificate)


@pytest.fixture
def writer(tmp_path):
    session = SessionLogWriter.open(tmp_path / "sessions")
    yield session
    session.close()

