"""Tests for the log server and its HTTP client."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from sealedlog.addressing import hash_id
from sealedlog.api import MAX_SKEW_MS, app, get_log
from sealedlog.client import Messenger
from sealedlog.crypto import sign_message
from sealedlog.errors import LogReadError, PublishError
from sealedlog.keystore import InMemoryKeyStore
from sealedlog.log import LogRecord, RemoteRecordLog, publish_signing_payload
from sealedlog.options import MessengerOptions
from sealedlog.records import DirectMessageRecord
from sealedlog.testing import ALICE, BOB, ManualClock

SCHEMA = hash_id("uint64 a")


def signed_post(client, publisher, records, signing_key, issued_at=None, signature=None):
    """POST /v1/records signed the way RemoteRecordLog signs."""
    if issued_at is None:
        issued_at = int(time.time() * 1000)
    log_records = [
        LogRecord(r["id"], r["schemaId"], bytes.fromhex(r["data"])) for r in records
    ]
    if signature is None:
        signature = sign_message(
            publish_signing_payload(publisher, issued_at, log_records), signing_key
        )
    return client.post(
        "/v1/records",
        json={"publisher": publisher, "records": records},
        headers={
            "X-Publisher-Key": bytes(signing_key.verify_key).hex(),
            "X-Publish-Signature": signature.hex(),
            "X-Publish-Issued-At": str(issued_at),
        },
    )


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def alice_key():
    return SigningKey.generate()


@pytest.fixture
def remote(client, alice_key):
    """RemoteRecordLog talking to the app in-process, signing for Alice."""
    log = RemoteRecordLog("http://testserver", client=client)
    log.add_signer(ALICE, alice_key)
    return log


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestRecordsEndpoints:
    """Tests for /v1/records."""

    def test_publish_and_read(self, client, alice_key):
        response = signed_post(
            client,
            ALICE,
            [{"id": hash_id("r1"), "schemaId": SCHEMA, "data": "00ff"}],
            alice_key,
        )
        assert response.status_code == 200
        tx_hash = response.json()["txHash"]

        response = client.get(f"/v1/records/{SCHEMA}/{ALICE}")
        assert response.status_code == 200
        assert response.json() == {"rows": [{"id": hash_id("r1"), "data": "00ff"}]}

        response = client.get(f"/v1/transactions/{tx_hash}")
        assert response.json() == {"txHash": tx_hash, "status": "confirmed"}

    def test_publish_uses_shared_log(self, client, alice_key):
        signed_post(
            client,
            ALICE,
            [{"id": hash_id("r1"), "schemaId": SCHEMA, "data": "01"}],
            alice_key,
        )
        assert get_log().read_all_by_publisher(SCHEMA, ALICE)[0].data == b"\x01"

    def test_invalid_publisher(self, client):
        response = client.post(
            "/v1/records",
            json={"publisher": "bob", "records": []},
        )
        assert response.status_code == 400

    def test_invalid_hex(self, client):
        response = client.post(
            "/v1/records",
            json={
                "publisher": ALICE,
                "records": [{"id": hash_id("r1"), "schemaId": SCHEMA, "data": "zz"}],
            },
        )
        assert response.status_code == 400

    def test_invalid_record_id(self, client):
        response = client.post(
            "/v1/records",
            json={
                "publisher": ALICE,
                "records": [{"id": "0x12", "schemaId": SCHEMA, "data": "00"}],
            },
        )
        assert response.status_code == 422

    def test_read_invalid_schema(self, client):
        assert client.get(f"/v1/records/nope/{ALICE}").status_code == 400

    def test_read_invalid_publisher(self, client):
        assert client.get(f"/v1/records/{SCHEMA}/bob").status_code == 400

    def test_read_empty(self, client):
        response = client.get(f"/v1/records/{SCHEMA}/{BOB}")
        assert response.json() == {"rows": []}

    def test_unknown_transaction(self, client):
        assert client.get(f"/v1/transactions/{hash_id('nope')}").status_code == 404


class TestPublishAuthorization:
    """Only the key bound to a publisher may write its slot."""

    RECORDS = [{"id": hash_id("r1"), "schemaId": SCHEMA, "data": "01"}]

    def test_unsigned_publish_rejected(self, client):
        response = client.post("/v1/records", json={"publisher": ALICE, "records": self.RECORDS})
        assert response.status_code == 401
        assert get_log().read_all_by_publisher(SCHEMA, ALICE) == []

    def test_first_publish_binds_key(self, client, alice_key):
        assert signed_post(client, ALICE, self.RECORDS, alice_key).status_code == 200
        assert get_log().publisher_key(ALICE) == bytes(alice_key.verify_key)

    def test_foreign_key_rejected(self, client, alice_key):
        signed_post(client, ALICE, self.RECORDS, alice_key)

        overwrite = [{"id": hash_id("r1"), "schemaId": SCHEMA, "data": "ff"}]
        response = signed_post(client, ALICE, overwrite, SigningKey.generate())
        assert response.status_code == 403
        assert get_log().read_all_by_publisher(SCHEMA, ALICE)[0].data == b"\x01"

    def test_bad_signature_rejected(self, client, alice_key):
        response = signed_post(client, ALICE, self.RECORDS, alice_key, signature=b"\x00" * 64)
        assert response.status_code == 403
        assert get_log().publisher_key(ALICE) is None

    def test_signature_covers_records(self, client, alice_key):
        issued_at = int(time.time() * 1000)
        other = [LogRecord(hash_id("r1"), SCHEMA, b"\x02")]
        signature = sign_message(publish_signing_payload(ALICE, issued_at, other), alice_key)
        response = signed_post(
            client, ALICE, self.RECORDS, alice_key, issued_at=issued_at, signature=signature
        )
        assert response.status_code == 403

    def test_stale_signature_rejected(self, client, alice_key):
        issued_at = int(time.time() * 1000) - MAX_SKEW_MS - 60_000
        response = signed_post(client, ALICE, self.RECORDS, alice_key, issued_at=issued_at)
        assert response.status_code == 401

    def test_replayed_publish_rejected(self, client, alice_key):
        issued_at = int(time.time() * 1000)
        assert signed_post(client, ALICE, self.RECORDS, alice_key, issued_at).status_code == 200
        assert signed_post(client, ALICE, self.RECORDS, alice_key, issued_at).status_code == 403

    def test_malformed_headers(self, client):
        response = client.post(
            "/v1/records",
            json={"publisher": ALICE, "records": self.RECORDS},
            headers={
                "X-Publisher-Key": "zz",
                "X-Publish-Signature": "00",
                "X-Publish-Issued-At": "now",
            },
        )
        assert response.status_code == 401


class TestRemoteRecordLog:
    """Tests for RemoteRecordLog against the in-process server."""

    def test_info(self, remote):
        info = remote.get_info()
        assert info.log_type == "remote"
        assert info.location == "http://testserver"

    def test_publish_wait_and_read(self, remote):
        handle = remote.publish(ALICE, [LogRecord(hash_id("r1"), SCHEMA, b"\x00\x01")])
        handle.wait(timeout=5)
        rows = remote.read_all_by_publisher(SCHEMA, ALICE)
        assert [(r.record_id, r.data) for r in rows] == [(hash_id("r1"), b"\x00\x01")]

    def test_unknown_transaction(self, remote):
        assert remote.transaction_status(hash_id("nope")) is None

    def test_invalid_publisher_rejected_locally(self, remote):
        with pytest.raises(PublishError):
            remote.publish("bob", [])

    def test_publish_without_signer(self, client):
        unsigned = RemoteRecordLog("http://testserver", client=client)
        with pytest.raises(PublishError, match="No signing key"):
            unsigned.publish(ALICE, [LogRecord(hash_id("r1"), SCHEMA, b"")])

    def test_server_rejection_raises(self, client, remote):
        remote.publish(ALICE, [LogRecord(hash_id("r1"), SCHEMA, b"\x01")]).wait(timeout=5)
        impostor = RemoteRecordLog("http://testserver", client=client)
        impostor.add_signer(ALICE, SigningKey.generate())
        with pytest.raises(PublishError, match="403"):
            impostor.publish(ALICE, [LogRecord(hash_id("r1"), SCHEMA, b"\x02")])

    def test_server_error_on_read(self, remote):
        with pytest.raises(LogReadError):
            remote.read_all_by_publisher("nope", ALICE)

    def test_unreachable_server(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        offline = RemoteRecordLog(
            "http://offline", client=httpx.Client(transport=httpx.MockTransport(refuse))
        )
        offline.add_signer(ALICE, SigningKey.generate())
        with pytest.raises(LogReadError):
            offline.read_all_by_publisher(SCHEMA, ALICE)
        with pytest.raises(PublishError):
            offline.publish(ALICE, [LogRecord(hash_id("r1"), SCHEMA, b"")])


def _http_users(client, clock):
    users = {}
    for address in (ALICE, BOB):
        users[address] = Messenger(
            address,
            MessengerOptions(url="http://testserver"),
            log=RemoteRecordLog("http://testserver", client=client),
            keystore=InMemoryKeyStore(),
            clock=clock,
        )
        users[address].initialize()
    return users[ALICE], users[BOB]


class TestMessengersOverHttp:
    def test_conversation(self, client):
        clock = ManualClock()
        alice, bob = _http_users(client, clock)

        sent = alice.send_direct_message(BOB, "over http")
        sent.self_copy.result(timeout=10)
        clock.advance()
        bob.send_direct_message(ALICE, "back at you").self_copy.result(timeout=10)

        assert [e.text for e in bob.read_conversation(ALICE)] == ["over http", "back at you"]
        assert [e.text for e in alice.read_conversation(BOB)] == ["over http", "back at you"]
        alice.close()
        bob.close()

    def test_clear_chat_over_http(self, client):
        alice, bob = _http_users(client, ManualClock())
        alice.send_direct_message(BOB, "oops").self_copy.result(timeout=10)

        assert alice.clear_chat(BOB).ok
        assert bob.read_conversation(ALICE) == []
        alice.close()
        bob.close()

    def test_other_client_cannot_delete_messages(self, client):
        alice, bob = _http_users(client, ManualClock())
        sent = alice.send_direct_message(BOB, "hello")
        sent.self_copy.result(timeout=10)
        assert [e.text for e in bob.read_conversation(ALICE)] == ["hello"]

        schema = DirectMessageRecord.SCHEMA.id
        [row] = [
            r for r in get_log().read_all_by_publisher(schema, ALICE)
            if r.record_id == sent.message_id
        ]
        deleted = DirectMessageRecord.decode(row.data).mark_deleted()
        response = signed_post(
            client,
            ALICE,
            [{"id": sent.message_id, "schemaId": schema, "data": deleted.encode().hex()}],
            SigningKey.generate(),
        )

        assert response.status_code == 403
        assert [e.text for e in bob.read_conversation(ALICE)] == ["hello"]
        alice.close()
        bob.close()
