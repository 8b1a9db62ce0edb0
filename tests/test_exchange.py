"""
Exchange Engine Tests

Drives SecureHttpClient against handler functions through
httpx.MockTransport, with a Responder playing the counterparty.

Test Categories:
1. Scenarios - sealed GET/POST round trips
2. Fail-closed - bad status, missing headers, bad signatures
3. Application failures - verified responses carrying a failure code
4. Wire details - headers, alphabets, nonce handling

Usage:
    pytest tests/test_exchange.py -v
"""

import json

import httpx
import pytest
from pydantic import BaseModel

from sealcall import (
    ApplicationError,
    KeyMaterial,
    MemoryReplayProtector,
    ProtocolError,
    ReplayError,
    Responder,
    SecureHttpClient,
    TransportError,
    VerificationError,
)
from sealcall.codec import b64_encode, b64decode_any, b64url_encode
from sealcall.models import ResponseEnvelope


class OrderResult(BaseModel):
    id: int
    ok: bool


def echo_get_handler(responder, captured=None):
    """Counterparty that opens a sealed GET and answers {**command, ok: true}."""

    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        command = responder.open_get(
            request.url.query.decode("ascii"),
            request.headers["X-Nonce"],
            request.headers["X-Signature"],
            dict,
        )
        sealed = responder.seal_response({**command, "ok": True})
        return httpx.Response(200, content=sealed.body.encode(), headers=sealed.headers)

    return handler


def fixed_handler(response: httpx.Response):
    """Counterparty that answers every request with a copy of one response."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    return handler


class TestScenarios:
    """Sealed exchanges that should succeed."""

    def test_get_with_command_returns_decrypted_result(self, make_client, responder):
        client = make_client(echo_get_handler(responder))
        assert client.get("/orders", dict, command={"id": 42}) == {"id": 42, "ok": True}

    def test_get_into_pydantic_model(self, make_client, responder):
        client = make_client(echo_get_handler(responder))
        result = client.get("/orders", OrderResult, command={"id": 42})
        assert result == OrderResult(id=42, ok=True)

    def test_bare_get_still_verifies_response(self, make_client, responder, to_response):
        captured = []

        def handler(request):
            captured.append(request)
            return to_response(responder.seal_response({"version": "2.0"}))

        client = make_client(handler)
        assert client.get("/status", dict) == {"version": "2.0"}

        request = captured[0]
        assert request.url.query == b""
        assert "X-Signature" not in request.headers
        assert "X-Access-Token" not in request.headers

    def test_post_delivers_command(self, make_client, responder, to_response):
        received = []

        def handler(request):
            received.append(responder.open_post(
                request.content,
                request.headers["X-Nonce"],
                request.headers["X-Signature"],
                dict,
            ))
            return to_response(responder.seal_response())

        client = make_client(handler)
        assert client.post("/orders", {"id": 42, "qty": 3}, access_token="tok-1") is None
        assert received == [{"id": 42, "qty": 3}]

    def test_post_accepts_signed_empty_204(self, make_client, responder):
        def handler(request):
            headers = responder.sign_body("")
            return httpx.Response(204, headers=headers)

        client = make_client(handler)
        client.post("/orders", {"id": 1})

    def test_injected_fake_cipher(self, make_client, fake_cipher):
        responder = Responder(cipher=fake_cipher)
        client = make_client(echo_get_handler(responder), key_material=None, cipher=fake_cipher)
        assert client.get("/orders", dict, command={"id": 5}) == {"id": 5, "ok": True}


class TestFailClosed:
    """Anything that is not a verified envelope aborts the exchange."""

    @pytest.mark.parametrize("status_code", [201, 301, 400, 401, 404, 500, 503])
    def test_non_success_status(self, make_client, responder, to_response, status_code):
        sealed = responder.seal_response({"id": 42})
        client = make_client(fixed_handler(to_response(sealed, status_code=status_code)))

        with pytest.raises(TransportError) as excinfo:
            client.get("/orders", dict, command={"id": 42})
        assert excinfo.value.status_code == status_code

    @pytest.mark.parametrize("missing", ["X-Signature", "X-Nonce"])
    def test_missing_header(self, make_client, responder, missing):
        sealed = responder.seal_response({"id": 42})
        headers = {k: v for k, v in sealed.headers.items() if k != missing}
        client = make_client(fixed_handler(httpx.Response(200, content=b"not json", headers=headers)))

        with pytest.raises(ProtocolError, match=missing):
            client.get("/orders", dict, command={"id": 42})

    @pytest.mark.parametrize("blank", ["X-Signature", "X-Nonce"])
    def test_blank_header(self, make_client, responder, blank):
        sealed = responder.seal_response({"id": 42})
        headers = dict(sealed.headers)
        headers[blank] = "  "
        client = make_client(fixed_handler(httpx.Response(200, content=sealed.body.encode(), headers=headers)))

        with pytest.raises(ProtocolError, match=blank):
            client.post("/orders", {"id": 42})

    def test_tampered_body(self, make_client, responder):
        sealed = responder.seal_response({"id": 42, "ok": True})
        tampered = sealed.body.replace('"message":"success"', '"message":"succeeded"')
        assert tampered != sealed.body
        client = make_client(fixed_handler(httpx.Response(200, content=tampered.encode(), headers=sealed.headers)))

        with pytest.raises(VerificationError, match="signature verification failed"):
            client.get("/orders", dict, command={"id": 42})

    def test_body_signed_by_someone_else(self, make_client, to_response):
        impostor_material, _ = KeyMaterial.generate_pair()
        impostor = Responder(impostor_material)
        client = make_client(fixed_handler(to_response(impostor.seal_response({"id": 42}))))

        with pytest.raises(VerificationError):
            client.get("/orders", dict, command={"id": 42})

    def test_signature_moved_to_other_nonce(self, make_client, responder):
        sealed = responder.seal_response({"id": 42})
        headers = dict(sealed.headers)
        headers["X-Nonce"] = headers["X-Nonce"] + "0"
        client = make_client(fixed_handler(httpx.Response(200, content=sealed.body.encode(), headers=headers)))

        with pytest.raises(VerificationError):
            client.get("/orders", dict, command={"id": 42})

    def test_malformed_signature_encoding(self, make_client, responder):
        sealed = responder.seal_response({"id": 42})
        headers = dict(sealed.headers)
        headers["X-Signature"] = "***"
        client = make_client(fixed_handler(httpx.Response(200, content=sealed.body.encode(), headers=headers)))

        with pytest.raises(VerificationError):
            client.get("/orders", dict, command={"id": 42})

    def test_unsealed_endpoint(self, make_client):
        client = make_client(fixed_handler(httpx.Response(200, json={"id": 42})))
        with pytest.raises(ProtocolError):
            client.get("/plain", dict)

    def test_verified_body_not_an_envelope(self, make_client, responder):
        body = "[1, 2, 3]"
        client = make_client(fixed_handler(httpx.Response(200, content=body.encode(), headers=responder.sign_body(body))))
        with pytest.raises(ProtocolError, match="Malformed response envelope"):
            client.get("/orders", dict)

    def test_success_without_ciphertext_on_get(self, make_client, responder, to_response):
        client = make_client(fixed_handler(to_response(responder.seal_response())))
        with pytest.raises(ProtocolError, match="no ciphertext"):
            client.get("/orders", dict, command={"id": 1})

    def test_transport_failure(self, make_client):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransportError) as excinfo:
            client.post("/orders", {"id": 1})
        assert excinfo.value.status_code is None


class TestApplicationFailure:
    """Verified responses with a failure code raise ApplicationError."""

    def test_get_failure_code(self, make_client, responder, to_response):
        sealed = responder.seal_response(code=1001, message="order not found")
        client = make_client(fixed_handler(to_response(sealed)))

        with pytest.raises(ApplicationError) as excinfo:
            client.get("/orders", dict, command={"id": 42})
        assert excinfo.value.code == 1001
        assert excinfo.value.message == "order not found"

    def test_post_failure_code(self, make_client, responder, to_response):
        sealed = responder.seal_response(code="E_DENIED", message="insufficient quota")
        client = make_client(fixed_handler(to_response(sealed)))

        with pytest.raises(ApplicationError) as excinfo:
            client.post("/orders", {"id": 42})
        assert excinfo.value.code == "E_DENIED"

    def test_custom_success_code(self, make_client, responder, to_response):
        sealed = responder.seal_response({"id": 1}, code=200)
        client = make_client(fixed_handler(to_response(sealed)), success_code=200)
        assert client.get("/orders", dict, command={"id": 1}) == {"id": 1}

    def test_failure_code_even_with_ciphertext(self, make_client, responder, to_response):
        sealed = responder.seal_response({"id": 1}, code=1, message="partial")
        client = make_client(fixed_handler(to_response(sealed)))
        with pytest.raises(ApplicationError):
            client.get("/orders", dict, command={"id": 1})


class TestWireDetails:
    """Header and encoding rules of the request side."""

    def test_get_headers_and_query(self, make_client, responder):
        captured = []
        client = make_client(echo_get_handler(responder, captured), nonce_source=lambda: "fixed-nonce")
        client.get("/orders", dict, command={"id": 42}, access_token="tok-1")

        request = captured[0]
        query = request.url.query.decode("ascii")
        assert query.startswith("ct=")
        assert "=" not in query[3:]
        assert request.headers["X-Nonce"] == "fixed-nonce"
        assert request.headers["X-Access-Token"] == "tok-1"

        signature = b64decode_any(request.headers["X-Signature"])
        assert responder.cipher.verify(query.encode(), b"fixed-nonce", signature)

    @pytest.mark.parametrize("token", ["", "   "])
    def test_get_omits_blank_access_token(self, make_client, responder, token):
        captured = []
        client = make_client(echo_get_handler(responder, captured))
        client.get("/orders", dict, command={"id": 42}, access_token=token)
        assert "X-Access-Token" not in captured[0].headers

    def test_get_appends_to_existing_query(self, make_client, responder):
        captured = []
        client = make_client(echo_get_handler(responder, captured))

        assert client.get("/orders?page=2", dict, command={"id": 42}) == {"id": 42, "ok": True}

        query = captured[0].url.query.decode("ascii")
        assert query.startswith("page=2&ct=")
        assert captured[0].url.params["page"] == "2"

    def test_post_headers_and_body(self, make_client, responder, to_response):
        captured = []

        def handler(request):
            captured.append(request)
            return to_response(responder.seal_response())

        client = make_client(handler)
        client.post("/orders", {"id": 42})

        request = captured[0]
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Access-Token"] == ""
        assert request.headers["X-Nonce"]
        assert "-" in request.headers["X-Nonce"]

        body = request.content.decode()
        assert list(json.loads(body)) == ["ct"]
        assert body == '{"ct":"%s"}' % json.loads(body)["ct"]

        signature = b64decode_any(request.headers["X-Signature"])
        assert responder.cipher.verify(request.content, request.headers["X-Nonce"].encode(), signature)

    def test_nonce_is_fresh_per_exchange(self, make_client, responder, to_response):
        captured = []

        def handler(request):
            captured.append(request.headers["X-Nonce"])
            return to_response(responder.seal_response())

        client = make_client(handler)
        client.post("/orders", {"id": 1})
        client.post("/orders", {"id": 1})
        assert captured[0] != captured[1]

    def test_response_alphabets(self, make_client, responder):
        sealed = responder.seal_response({"id": 42})
        envelope = ResponseEnvelope.model_validate_json(sealed.body)
        # Re-encode ct URL-safe, re-sign, and send the signature URL-safe too
        urlsafe_ct = b64url_encode(b64decode_any(envelope.ct))
        body = ResponseEnvelope(code=0, message="success", ct=urlsafe_ct).to_json()
        headers = responder.sign_body(body)
        headers["X-Signature"] = b64url_encode(b64decode_any(headers["X-Signature"]))

        client = make_client(fixed_handler(httpx.Response(200, content=body.encode(), headers=headers)))
        assert client.get("/orders", dict, command={"id": 42}) == {"id": 42}

    def test_response_ct_is_standard_base64(self, responder):
        sealed = responder.seal_response({"blob": "x" * 100})
        ct = ResponseEnvelope.model_validate_json(sealed.body).ct
        assert ct == b64_encode(b64decode_any(ct))

    def test_none_result_leaves_ct_out(self, responder):
        sealed = responder.seal_response(None, code=401, message="denied")
        assert sealed.body == '{"code":401,"message":"denied"}'


class TestReplay:
    """A captured response cannot be fed into a later exchange."""

    def test_replayed_response_rejected(self, make_client, responder, to_response):
        sealed = responder.seal_response({"id": 42})
        client = make_client(fixed_handler(to_response(sealed)), replay_guard=MemoryReplayProtector())

        assert client.get("/orders", dict, command={"id": 42}) == {"id": 42}
        with pytest.raises(ReplayError):
            client.get("/orders", dict, command={"id": 42})

    def test_replay_error_is_verification_error(self):
        assert issubclass(ReplayError, VerificationError)

    def test_unverified_nonce_not_recorded(self, make_client, responder):
        guard = MemoryReplayProtector()
        sealed = responder.seal_response({"id": 42})
        headers = dict(sealed.headers)
        headers["X-Signature"] = b64_encode(b"\x00" * 64)
        client = make_client(
            fixed_handler(httpx.Response(200, content=sealed.body.encode(), headers=headers)),
            replay_guard=guard,
        )

        with pytest.raises(VerificationError):
            client.get("/orders", dict, command={"id": 42})
        assert len(guard) == 0

    def test_without_guard_same_response_accepted_twice(self, make_client, responder, to_response):
        client = make_client(fixed_handler(to_response(responder.seal_response({"id": 1}))))
        client.get("/orders", dict, command={"id": 1})
        client.get("/orders", dict, command={"id": 1})


class TestClientLifecycle:

    def test_requires_keys_or_cipher(self):
        with pytest.raises(ValueError):
            SecureHttpClient()

    def test_context_manager_closes_owned_client(self, caller_material):
        with SecureHttpClient(caller_material, base_url="https://counterparty.test") as client:
            http_client = client.http_client
        assert http_client.is_closed

    def test_injected_client_left_open(self, caller_material):
        http_client = httpx.Client()
        with SecureHttpClient(caller_material, http_client=http_client):
            pass
        assert not http_client.is_closed
        http_client.close()
