"""Web interface for samlsp."""
