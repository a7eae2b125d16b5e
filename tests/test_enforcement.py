import pytest
import requests

from authority.enforcement import (
    EnforcementSignal,
    RulesetBackend,
    SignedRefBackend,
    get_backend,
)
from authority.keys import get_default_provider
from hrgate.payload import decode
from hrgate.transport import MemoryRefTransport, TransportError

NOW = 1_700_000_000

TARGET = {
    "id": 1,
    "owner": "acme",
    "name": "app",
    "subject_key": "octocat",
    "ref_name": "refs/hrgate/hr/octocat",
    "credential": "ghs_token",
    "backend": "signed_ref",
    "ruleset_id": None,
}


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def put(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def test_signal_decision():
    assert EnforcementSignal("s1", 100, 100).decision is True
    assert EnforcementSignal("s1", 99, 100).decision is False
    assert EnforcementSignal("s1", 140, 100, forced_deny=True).decision is False


def test_signed_ref_backend_publishes():
    transport = MemoryRefTransport()
    backend = SignedRefBackend(get_default_provider(), transport, ttl_seconds=15)
    result = backend.enforce(TARGET, EnforcementSignal("s1", 120, 100), NOW)

    assert result.decision is True
    assert result.expires_at == NOW + 15
    assert decode(transport.fetch(TARGET["ref_name"])).session_id == "s1"


def test_ruleset_backend_toggles_enforcement():
    target = dict(TARGET, backend="ruleset", ruleset_id=42)
    session = FakeSession(FakeResponse(200))
    backend = RulesetBackend("ghs_token", api_url="https://gh.test/", session=session)

    assert backend.enforce(target, EnforcementSignal("s1", 120, 100), NOW).decision is True
    assert backend.enforce(target, EnforcementSignal("s1", 72, 100), NOW).decision is False

    allow, deny = session.calls
    assert allow["url"] == "https://gh.test/repos/acme/app/rulesets/42"
    assert allow["json"] == {"enforcement": "disabled"}
    assert deny["json"] == {"enforcement": "active"}


def test_ruleset_backend_errors():
    target = dict(TARGET, backend="ruleset", ruleset_id=42)
    with pytest.raises(TransportError):
        RulesetBackend("t", session=FakeSession(FakeResponse(403))).enforce(target, EnforcementSignal("s1", 120, 100), NOW)
    with pytest.raises(TransportError):
        RulesetBackend("t", session=FakeSession(error=requests.ConnectionError("down"))).enforce(
            target, EnforcementSignal("s1", 120, 100), NOW
        )
    with pytest.raises(TransportError):
        RulesetBackend("t", session=FakeSession(FakeResponse(200))).enforce(TARGET, EnforcementSignal("s1", 120, 100), NOW)


def test_get_backend_dispatch():
    transport = MemoryRefTransport()
    assert isinstance(get_backend(TARGET, get_default_provider(), lambda t: transport), SignedRefBackend)
    assert isinstance(get_backend(dict(TARGET, backend="ruleset", ruleset_id=1), get_default_provider()), RulesetBackend)
    with pytest.raises(ValueError):
        get_backend(dict(TARGET, backend="smoke-signal"), get_default_provider())
