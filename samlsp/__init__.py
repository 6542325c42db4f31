"""samlsp - SAML 2.0 Service Provider with session gating."""

__version__ = "0.1.0"
