"""
execproof Verifier Service

HTTP face of the verifier for provers running on other hosts. The prover
keeps witness, blinding and raw output locally and only ever sends the
commitment value and the public transcript.

    POST /challenges                     issue a challenge for a binary
    POST /challenges/{challenge_id}/consume
    POST /commitments                    publish a commitment value
    POST /verify                         submit a session transcript
    GET  /health

Serve with any ASGI server, e.g. ``create_app(verifier)``. Each challenge
request first evicts challenges past the retention window. Interactive API
docs are switched off when EXECPROOF_ENV is prod.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__, config
from .errors import ErrorKind, ExecProofError
from .identity import BinaryIdentity
from .logging_config import set_session_id
from .verifier import ProofVerifier, SessionTranscript

logger = logging.getLogger(__name__)

# ExecProofError kinds surfaced as HTTP status codes
HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.EXPIRED: 410,
    ErrorKind.ALREADY_CONSUMED: 409,
    ErrorKind.COMMITMENT_MISMATCH: 409,
}


class BinaryIdentityModel(BaseModel):
    name: str
    version: str
    checksum: str
    checksum_algorithm: str = "sha256"


class ChallengeRequest(BaseModel):
    binary: BinaryIdentityModel


class CommitmentRequest(BaseModel):
    challenge_id: str
    commitment_value: str


class VerifyRequest(BaseModel):
    transcript: Dict[str, Any] = Field(default_factory=dict)


def _http_error(e: ExecProofError) -> HTTPException:
    return HTTPException(status_code=HTTP_STATUS.get(e.kind, 400), detail=e.to_dict())


def create_app(verifier: ProofVerifier, title: Optional[str] = None) -> FastAPI:
    """Build the verifier service around an existing ``ProofVerifier``."""
    docs = {"docs_url": None, "redoc_url": None, "openapi_url": None} if config.is_production() else {}
    app = FastAPI(title=title or "execproof verifier", version=__version__, **docs)
    issuer = verifier.issuer

    @app.get("/health")
    def health():
        return {"status": "ok", "env": config.ENV, "issuer_id": issuer.issuer_id}

    @app.post("/challenges")
    def issue_challenge(req: ChallengeRequest):
        try:
            identity = BinaryIdentity.from_dict(req.binary.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        verifier.evict_expired()
        return issuer.issue(identity).to_dict()

    @app.post("/challenges/{challenge_id}/consume")
    def consume_challenge(challenge_id: str):
        try:
            return issuer.consume(challenge_id).to_dict()
        except ExecProofError as e:
            raise _http_error(e)

    @app.post("/commitments")
    def record_commitment(req: CommitmentRequest):
        try:
            verifier.record_commitment(req.challenge_id, req.commitment_value)
        except ExecProofError as e:
            raise _http_error(e)
        return {"challenge_id": req.challenge_id, "recorded": True}

    @app.post("/verify")
    def verify(req: VerifyRequest):
        try:
            transcript = SessionTranscript.from_dict(req.transcript)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed transcript: {e}")
        set_session_id(transcript.session_id)
        result = verifier.verify(transcript)
        return result.to_dict()

    return app
