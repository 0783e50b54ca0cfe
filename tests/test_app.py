from uvicorn.importer import import_from_string

from safetyhub.config import Settings


def test_default_database_lives_under_var(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    settings = Settings(_env_file=None)
    assert settings.database_url == "sqlite:///./var/safetyhub.db"


def test_uvicorn_target_resolves():
    from safetyhub.main import app

    assert import_from_string("safetyhub.main:app") is app
