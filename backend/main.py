from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from solders.keypair import Keypair as SoldersKeypair
from solders.pubkey import Pubkey

from content_store import PinataContentStore
from errors import BuildError, ContentStoreError, EncodingError, IssuanceError, NetworkQueryError, ValidationError
from issuer import TokenIssuer
from metadata_codec import FieldLimits
from models import TokenDescriptor
from rpc import KeypairSigner, RpcConnection, load_keypair
from settings import Settings, get_settings
from tx_builder import to_pubkey

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("launchpad")

app = FastAPI(title="Launchpad")

ISSUER_KEYPAIR: Optional[SoldersKeypair] = None
ISSUER_LOCK = threading.Lock()
CONNECTION: Optional[RpcConnection] = None


class MetadataUploadRequest(BaseModel):
    name: str
    symbol: str
    description: str
    image_b64: str
    image_filename: str = "image"
    image_content_type: str = "application/octet-stream"


class MetadataUploadResponse(BaseModel):
    uri: str


class IssueRequest(BaseModel):
    name: str
    symbol: str
    decimals: Optional[int] = None
    initial_supply: int
    uri: str


class ResumeRequest(IssueRequest):
    mint: str


def status_for(exc: IssuanceError) -> int:
    if isinstance(exc, (ValidationError, EncodingError, BuildError)):
        return 400
    if isinstance(exc, NetworkQueryError):
        return 502
    return 500


def load_issuer_keypair(settings: Settings = Depends(get_settings)) -> SoldersKeypair:
    global ISSUER_KEYPAIR
    with ISSUER_LOCK:
        if ISSUER_KEYPAIR:
            return ISSUER_KEYPAIR
        if not settings.issuer_keypair_path:
            raise HTTPException(status_code=500, detail="ISSUER_KEYPAIR_PATH not configured")
        try:
            ISSUER_KEYPAIR = load_keypair(settings.issuer_keypair_path)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=500, detail=f"Failed to parse issuer keypair: {exc}") from exc
        return ISSUER_KEYPAIR


def get_connection(settings: Settings = Depends(get_settings)) -> RpcConnection:
    global CONNECTION
    if CONNECTION is None:
        CONNECTION = RpcConnection.from_settings(settings)
    return CONNECTION


def get_issuer(
    settings: Settings = Depends(get_settings),
    keypair: SoldersKeypair = Depends(load_issuer_keypair),
    connection: RpcConnection = Depends(get_connection),
) -> TokenIssuer:
    return TokenIssuer(connection, KeypairSigner(keypair, connection), limits=FieldLimits.from_settings(settings))


def get_content_store(settings: Settings = Depends(get_settings)) -> PinataContentStore:
    try:
        return PinataContentStore.from_settings(settings)
    except ContentStoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def to_descriptor(req: IssueRequest, settings: Settings) -> TokenDescriptor:
    decimals = settings.default_decimals if req.decimals is None else req.decimals
    return TokenDescriptor(
        name=req.name,
        symbol=req.symbol,
        decimals=decimals,
        initial_supply=req.initial_supply,
        uri=req.uri,
    )


def parse_pubkey(value: str, label: str) -> Pubkey:
    try:
        return to_pubkey(value)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"Invalid {label}: {value}") from exc


def ndjson_stream(entries):
    for entry in entries:
        yield json.dumps(entry.to_dict()) + "\n"


@app.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {"ok": True, "rpc": settings.rpc_url}


@app.post("/launch/metadata", response_model=MetadataUploadResponse)
def upload_metadata(req: MetadataUploadRequest, store: PinataContentStore = Depends(get_content_store)):
    try:
        image = base64.b64decode(req.image_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid image_b64: {exc}") from exc
    try:
        uri = store.pin_token_metadata(
            req.name,
            req.symbol,
            req.description,
            image,
            image_filename=req.image_filename,
            image_content_type=req.image_content_type,
        )
    except ContentStoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    logger.info("metadata_pinned name=%s symbol=%s uri=%s", req.name, req.symbol, uri)
    return MetadataUploadResponse(uri=uri)


@app.post("/launch/preview")
def preview_issuance(
    req: IssueRequest,
    settings: Settings = Depends(get_settings),
    issuer: TokenIssuer = Depends(get_issuer),
):
    descriptor = to_descriptor(req, settings)
    try:
        return issuer.preview(descriptor, issuer.signer.public_key)
    except IssuanceError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc


@app.post("/launch/issue")
def issue_token(
    req: IssueRequest,
    settings: Settings = Depends(get_settings),
    issuer: TokenIssuer = Depends(get_issuer),
):
    descriptor = to_descriptor(req, settings)
    owner = issuer.signer.public_key
    try:
        issuer.validate(descriptor, owner)
    except IssuanceError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return StreamingResponse(ndjson_stream(issuer.issue_token(descriptor, owner)), media_type="application/x-ndjson")


@app.post("/launch/resume")
def resume_issuance(
    req: ResumeRequest,
    settings: Settings = Depends(get_settings),
    issuer: TokenIssuer = Depends(get_issuer),
):
    descriptor = to_descriptor(req, settings)
    mint = parse_pubkey(req.mint, "mint")
    owner = issuer.signer.public_key
    try:
        issuer.validate(descriptor, owner)
    except IssuanceError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    entries = issuer.resume_issuance(descriptor, owner, mint)
    return StreamingResponse(ndjson_stream(entries), media_type="application/x-ndjson")
