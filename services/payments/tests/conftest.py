import os
import tempfile

# the repository binds its engine at import time
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/payments.db")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402


@pytest.fixture
def client():
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def enabled_account():
    from repo import PaymentsRepo

    repo = PaymentsRepo()
    acct = repo.create_account("owner@example.com")
    return repo.complete_onboarding(acct.id)


@pytest.fixture
def events(monkeypatch):
    """Capture webhook deliveries instead of sending them."""
    import main

    sent = []
    monkeypatch.setattr(main, "deliver_event", lambda *args: sent.append(args) or True)
    return sent
