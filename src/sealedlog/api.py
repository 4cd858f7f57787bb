"""FastAPI application exposing a record log over HTTP.

The server stores opaque encoded records; it never sees keys or plaintext.
``RemoteRecordLog`` is its client.

Writes are authorized per publisher slot. A publish carries an Ed25519
signature over the publisher, an issue time and the records
(``publish_signing_payload``). The first verified publish binds its verify
key to the publisher; later publishes must be signed by that key, be fresh,
and not repeat a signature seen recently.

Environment:
    SEALEDLOG_DB: SQLite file for the log (default ``:memory:``)
"""

import logging
import os
import re
import threading
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .crypto import verify_signature
from .errors import PublishError
from .log import InMemoryRecordLog, LogRecord, SqliteRecordLog, publish_signing_payload
from .schema import is_address

logger = logging.getLogger(__name__)

_HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

# Accepted clock skew for X-Publish-Issued-At; also how long signatures are
# remembered for replay detection.
MAX_SKEW_MS = 5 * 60 * 1000

# --- Log instance ---

_log: SqliteRecordLog | None = None


def get_log() -> SqliteRecordLog:
    """Get the server's record log, creating it from SEALEDLOG_DB on first use."""
    global _log
    if _log is None:
        db_path = os.environ.get("SEALEDLOG_DB", ":memory:")
        _log = InMemoryRecordLog() if db_path == ":memory:" else SqliteRecordLog(db_path)
        logger.info("Record log at %s", db_path)
    return _log


def set_log(log: SqliteRecordLog) -> None:
    """Replace the server's record log (for tests or embedding)."""
    global _log
    _log = log


def reset_log() -> None:
    """Close and forget the server's record log (for testing)."""
    global _log
    if _log is not None:
        _log.close()
    _log = None
    with _signatures_lock:
        _recent_signatures.clear()


# --- Replay detection ---

_recent_signatures: dict[str, int] = {}
"""Signature hex -> issued-at ms, for signatures inside the skew window."""
_signatures_lock = threading.Lock()


def _remember_signature(signature: str, issued_at: int, now_ms: int) -> bool:
    """Record a signature; False if it was already seen."""
    with _signatures_lock:
        for seen, at in list(_recent_signatures.items()):
            if now_ms - at > MAX_SKEW_MS:
                del _recent_signatures[seen]
        if signature in _recent_signatures:
            return False
        _recent_signatures[signature] = issued_at
        return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the record log on startup."""
    get_log()
    yield


app = FastAPI(
    title="sealedlog",
    description="Public append-only record log for end-to-end encrypted messages",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Request/Response Models ---


class RecordIn(BaseModel):
    id: str = Field(pattern=_HEX32_RE.pattern)
    schemaId: str = Field(pattern=_HEX32_RE.pattern)
    data: str
    """Hex-encoded record bytes."""


class PublishRequest(BaseModel):
    publisher: str
    records: list[RecordIn]


class PublishResponse(BaseModel):
    txHash: str


class RowOut(BaseModel):
    id: str
    data: str


class RowsResponse(BaseModel):
    rows: list[RowOut]


class TransactionResponse(BaseModel):
    txHash: str
    status: str


# --- Endpoints ---


@app.get("/health")
def health():
    return {"status": "ok"}


def require_publisher_signature(
    publisher: str,
    records: list[LogRecord],
    x_publisher_key: str | None,
    x_publish_signature: str | None,
    x_publish_issued_at: str | None,
) -> None:
    """Verify the publish is signed by the key bound to ``publisher``."""
    if not (x_publisher_key and x_publish_signature and x_publish_issued_at):
        raise HTTPException(
            401, "X-Publisher-Key, X-Publish-Signature and X-Publish-Issued-At headers required"
        )
    try:
        verify_key = bytes.fromhex(x_publisher_key)
        signature = bytes.fromhex(x_publish_signature)
        issued_at = int(x_publish_issued_at)
    except ValueError:
        raise HTTPException(401, "Malformed signature headers")

    now_ms = int(time.time() * 1000)
    if abs(now_ms - issued_at) > MAX_SKEW_MS:
        raise HTTPException(401, "Publish signature expired or issued in the future")

    payload = publish_signing_payload(publisher, issued_at, records)
    if not verify_signature(payload, signature, verify_key):
        raise HTTPException(403, "Invalid publish signature")

    bound_key = get_log().bind_publisher_key(publisher, verify_key)
    if bound_key != verify_key:
        logger.warning("Rejected publish for %s signed by a foreign key", publisher)
        raise HTTPException(403, "Publisher is bound to a different key")

    if not _remember_signature(signature.hex(), issued_at, now_ms):
        raise HTTPException(403, "Replayed publish")


@app.post("/v1/records", response_model=PublishResponse)
def publish_records(
    request: PublishRequest,
    x_publisher_key: Annotated[str | None, Header()] = None,
    x_publish_signature: Annotated[str | None, Header()] = None,
    x_publish_issued_at: Annotated[str | None, Header()] = None,
):
    """Publish records in the publisher's slot (signed by its owner)."""
    if not is_address(request.publisher):
        raise HTTPException(400, f"Invalid publisher address: {request.publisher}")
    publisher = request.publisher.lower()

    records = []
    for record in request.records:
        try:
            data = bytes.fromhex(record.data.removeprefix("0x"))
        except ValueError:
            raise HTTPException(400, f"Record {record.id}: data is not hex")
        records.append(
            LogRecord(record_id=record.id.lower(), schema_id=record.schemaId.lower(), data=data)
        )

    require_publisher_signature(
        publisher, records, x_publisher_key, x_publish_signature, x_publish_issued_at
    )

    try:
        handle = get_log().publish(publisher, records)
    except PublishError as e:
        raise HTTPException(400, str(e))
    return PublishResponse(txHash=handle.tx_hash)


@app.get("/v1/records/{schema_id}/{publisher}", response_model=RowsResponse)
def read_records(schema_id: str, publisher: str):
    """All records a publisher wrote under a schema, latest version each."""
    if not _HEX32_RE.match(schema_id):
        raise HTTPException(400, f"Invalid schema id: {schema_id}")
    if not is_address(publisher):
        raise HTTPException(400, f"Invalid publisher address: {publisher}")
    rows = get_log().read_all_by_publisher(schema_id.lower(), publisher)
    return RowsResponse(rows=[RowOut(id=row.record_id, data=row.data.hex()) for row in rows])


@app.get("/v1/transactions/{tx_hash}", response_model=TransactionResponse)
def get_transaction(tx_hash: str):
    status = get_log().transaction_status(tx_hash)
    if status is None:
        raise HTTPException(404, "Transaction not found")
    return TransactionResponse(txHash=tx_hash, status=status)
