"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from samlsp.app import create_app
from samlsp.core.config import AppConfig, Credentials
from samlsp.storage import Stores, memory_stores

from .idp import (
    IDP_ENTITY_ID,
    IDP_SSO_URL,
    SP_CALLBACK_URL,
    SP_ENTITY_ID,
    FakeIdP,
    FrozenClock,
    KeyPair,
    make_key_pair,
)


@pytest.fixture
def clock() -> FrozenClock:
    """Deterministic clock shared by the IdP and the SP."""
    return FrozenClock()


@pytest.fixture(scope="session")
def key_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("keys")


@pytest.fixture(scope="session")
def sp_keys(key_dir: Path) -> KeyPair:
    return make_key_pair(key_dir, "sp", "sp.example.edu")


@pytest.fixture(scope="session")
def idp_keys(key_dir: Path) -> KeyPair:
    return make_key_pair(key_dir, "idp", "idp.example.edu")


@pytest.fixture(scope="session")
def rogue_keys(key_dir: Path) -> KeyPair:
    """A key pair the SP does not trust."""
    return make_key_pair(key_dir, "rogue", "idp.example.edu")


@pytest.fixture
def config(sp_keys: KeyPair, idp_keys: KeyPair) -> AppConfig:
    """Complete configuration with in-memory stores."""
    app_config = AppConfig()
    app_config.saml.entry_point = IDP_SSO_URL
    app_config.saml.idp_issuer = IDP_ENTITY_ID
    app_config.saml.issuer = SP_ENTITY_ID
    app_config.saml.callback_url = SP_CALLBACK_URL
    app_config.saml.private_key_path = sp_keys.key_path
    app_config.saml.certificate_path = sp_keys.cert_path
    app_config.saml.idp_certificate_path = idp_keys.cert_path
    app_config.session.secret = "test-secret-key"
    app_config.session.cookie_secure = False
    return app_config


@pytest.fixture
def credentials(config: AppConfig) -> Credentials:
    return config.load_credentials()


@pytest.fixture
def stores() -> Stores:
    return memory_stores()


@pytest.fixture
def idp(idp_keys: KeyPair, sp_keys: KeyPair, clock: FrozenClock) -> FakeIdP:
    return FakeIdP(idp_keys, sp_keys.certificate, clock)


@pytest.fixture
def app(config: AppConfig, stores: Stores, clock: FrozenClock) -> Generator[Flask, None, None]:
    """Create application for testing."""
    app = create_app(config, stores=stores, clock=clock)
    app.config.update(TESTING=True)
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
