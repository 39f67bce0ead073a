from datetime import timedelta
import httpx
import pytest
from evowhats_relay.core.db import utcnow
from evowhats_relay.core.errors import AuthExpired, TokenExpired
from evowhats_relay.domain.services.token_refresher import TokenRefresher
from evowhats_relay.ports.interfaces import CrmInboundMessageDTO


def _expire(wiring, cred, delta):
    return wiring.store.update_tokens(cred.id, access_token=cred.access_token, refresh_token=cred.refresh_token,
                                      expires_at=utcnow() + delta)


def test_fresh_token_is_returned_unchanged(wiring, seeded):
    outcome = wiring.refresher.ensure_fresh(seeded.credential)
    assert not outcome.refreshed and outcome.error is None
    assert outcome.credential.access_token == "at-1"
    assert wiring.oauth_http.calls == []


def test_token_inside_skew_is_refreshed_and_persisted(wiring, seeded):
    cred = _expire(wiring, seeded.credential, timedelta(seconds=30))
    outcome = wiring.refresher.ensure_fresh(cred)
    assert outcome.refreshed
    assert outcome.credential.access_token == "at-new"
    stored = wiring.store.get(cred.id)
    assert (stored.access_token, stored.refresh_token) == ("at-new", "rt-new")
    assert stored.expires_at > utcnow() + timedelta(minutes=59)
    form = dict(httpx.QueryParams(wiring.oauth_http.calls[0].content.decode()))
    assert form["grant_type"] == "refresh_token" and form["refresh_token"] == "rt-1"


def test_refresh_failure_returns_original_with_token_expired(wiring, seeded):
    wiring.oauth_http.responder = lambda r: httpx.Response(400, json={"error": "invalid_grant"})
    cred = _expire(wiring, seeded.credential, timedelta(seconds=-5))
    outcome = wiring.refresher.ensure_fresh(cred)
    assert not outcome.refreshed
    assert isinstance(outcome.error, TokenExpired)
    assert outcome.credential.access_token == "at-1"


def test_network_failure_during_refresh_does_not_raise(wiring, seeded):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    wiring.oauth_http.responder = down
    cred = _expire(wiring, seeded.credential, timedelta(seconds=10))
    assert isinstance(wiring.refresher.ensure_fresh(cred).error, TokenExpired)


def test_missing_refresh_token_signals_expired(wiring, seeded, settings):
    seeded.credential.refresh_token = None
    seeded.credential.expires_at = utcnow() - timedelta(minutes=1)
    outcome = TokenRefresher(wiring.store, wiring.oauth, settings).ensure_fresh(seeded.credential)
    assert isinstance(outcome.error, TokenExpired)
    assert wiring.oauth_http.calls == []


def test_null_expiry_never_refreshes(wiring, seeded):
    seeded.credential.expires_at = None
    assert not wiring.refresher.needs_refresh(seeded.credential)


def test_crm_call_never_uses_expired_token_when_refresh_fails(wiring, seeded):
    wiring.oauth_http.responder = lambda r: httpx.Response(401, json={"error": "invalid_grant"})
    cred = _expire(wiring, seeded.credential, timedelta(seconds=-1))
    msg = CrmInboundMessageDTO(line_id="7", user_id="+5511988887777", text="oi")
    with pytest.raises(AuthExpired):
        wiring.crm.send_message(cred, msg)
    assert wiring.crm_http.calls == []


def test_near_expiry_token_is_refreshed_before_the_call(wiring, seeded):
    cred = _expire(wiring, seeded.credential, timedelta(seconds=20))
    wiring.crm.list_lines(cred)
    assert len(wiring.oauth_http.calls) == 1
    assert wiring.crm_http.calls[0].url.params["auth"] == "at-new"


def test_auth_rejection_forces_refresh_and_retries_once(wiring, seeded):
    responses = iter([
        httpx.Response(401, json={"error": "expired_token", "error_description": "The access token provided has expired."}),
        httpx.Response(200, json={"result": [{"ID": "7", "LINE_NAME": "WhatsApp"}]}),
    ])
    wiring.crm_http.responder = lambda r: next(responses)
    lines = wiring.crm.list_lines(seeded.credential)
    assert lines == [{"ID": "7", "LINE_NAME": "WhatsApp"}]
    assert [c.url.params["auth"] for c in wiring.crm_http.calls] == ["at-1", "at-new"]
    assert len(wiring.oauth_http.calls) == 1


def test_second_auth_rejection_is_raised(wiring, seeded):
    wiring.crm_http.responder = lambda r: httpx.Response(401, json={"error": "invalid_token"})
    with pytest.raises(AuthExpired):
        wiring.crm.list_lines(seeded.credential)
    assert len(wiring.crm_http.calls) == 2
