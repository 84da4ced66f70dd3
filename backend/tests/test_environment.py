"""
Environment helper tests (CORS allowlist per ENVIRONMENT)
"""

from utils import environment


class TestCorsOrigins:

    def test_production_excludes_localhost(self, monkeypatch):
        monkeypatch.setattr(environment, "ENVIRONMENT", "production")
        monkeypatch.delenv("FRONTEND_URL", raising=False)

        origins = environment.cors_origins()

        assert environment.is_production() is True
        assert "https://miniatur-ia.com" in origins
        assert not any("localhost" in o for o in origins), f"localhost leaked into production: {origins}"

    def test_development_allows_localhost_and_frontend_url(self, monkeypatch):
        monkeypatch.setattr(environment, "ENVIRONMENT", "development")
        monkeypatch.setenv("FRONTEND_URL", "https://preview.miniatur-ia.com/")

        origins = environment.cors_origins()

        assert environment.is_production() is False
        assert "http://localhost:5173" in origins
        assert "https://preview.miniatur-ia.com" in origins
