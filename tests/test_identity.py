"""Caller IP resolution."""

import httpx
import pytest

from gamingvm import identity
from gamingvm.errors import IdentityResolutionError
from gamingvm.identity import caller_cidr, get_my_ip


def _respond(monkeypatch, response=None, exc=None):
    def fake_get(url, timeout):
        if exc is not None:
            raise exc
        return response

    monkeypatch.setattr(identity.httpx, "get", fake_get)


def _response(status_code=200, **kwargs):
    return httpx.Response(
        status_code, request=httpx.Request("GET", identity.IP_ECHO_URL), **kwargs
    )


def test_returns_ip(monkeypatch):
    _respond(monkeypatch, _response(json={"ip": "203.0.113.7"}))
    assert get_my_ip() == "203.0.113.7"


def test_unreachable(monkeypatch):
    _respond(monkeypatch, exc=httpx.ConnectError("no route"))
    with pytest.raises(IdentityResolutionError):
        get_my_ip()


def test_http_error_status(monkeypatch):
    _respond(monkeypatch, _response(503, text="unavailable"))
    with pytest.raises(IdentityResolutionError):
        get_my_ip()


def test_body_not_json(monkeypatch):
    _respond(monkeypatch, _response(text="203.0.113.7"))
    with pytest.raises(IdentityResolutionError, match="not JSON"):
        get_my_ip()


def test_body_without_ip(monkeypatch):
    _respond(monkeypatch, _response(json={"address": "203.0.113.7"}))
    with pytest.raises(IdentityResolutionError, match="no 'ip'"):
        get_my_ip()


def test_ip_not_ipv4(monkeypatch):
    _respond(monkeypatch, _response(json={"ip": "not-an-ip"}))
    with pytest.raises(IdentityResolutionError):
        get_my_ip()


def test_caller_cidr():
    assert caller_cidr("203.0.113.7") == "203.0.113.7/32"
