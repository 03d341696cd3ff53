from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from botflow.backend import Backend
from botflow.errors import (
    AuthError,
    InvalidRequestError,
    NetworkError,
    ParseError,
    RateLimitError,
    RemoteServiceError,
    SchemaError,
    VersionLockedError,
)
from botflow.reference_lookup import ReferenceLookup
from botflow.settings import REFERENCE_BASE_URL

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_backend() -> Backend:
    reference = ReferenceLookup() if REFERENCE_BASE_URL else None
    return Backend(reference=reference)


backend = build_backend()


class GenerateRequest(BaseModel):
    config: Any = None
    priorAnswers: Any = None
    referenceMaterial: Any = None
    referenceQueries: Optional[List[str]] = None
    model: Optional[str] = None


class RefineRequest(BaseModel):
    document: Union[str, List[Any]]
    errors: Any = None
    iteration: int = 1
    knownFixes: Any = None
    model: Optional[str] = None


class ValidateRequest(BaseModel):
    document: Union[str, List[Any]]
    artifactId: str
    lastKnownLocked: Optional[str] = None


class PublishRequest(BaseModel):
    document: Union[str, List[Any]]
    artifactId: str
    versionId: Optional[str] = None
    environment: Optional[str] = None
    scripts: Optional[List[Dict[str, Any]]] = None


class RefineLoopRequest(BaseModel):
    document: Union[str, List[Any]]
    artifactId: str
    maxIterations: Optional[int] = None
    knownFixes: Any = None
    model: Optional[str] = None


# -----------------------
# Error mapping
# -----------------------

@app.exception_handler(ParseError)
async def _parse_error(request: Request, exc: ParseError):
    return JSONResponse(status_code=422, content={"error": str(exc), "attempted": exc.attempted})


@app.exception_handler(SchemaError)
async def _schema_error(request: Request, exc: SchemaError):
    return JSONResponse(status_code=422, content={"error": str(exc), "attempted": []})


@app.exception_handler(RateLimitError)
async def _rate_limit(request: Request, exc: RateLimitError):
    return JSONResponse(
        status_code=429,
        content={"error": str(exc), "isRateLimit": True, "retryAfterSeconds": exc.retry_after_seconds},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@app.exception_handler(AuthError)
async def _auth_error(request: Request, exc: AuthError):
    return JSONResponse(status_code=401, content={"error": str(exc), "authError": True})


@app.exception_handler(VersionLockedError)
async def _locked(request: Request, exc: VersionLockedError):
    return JSONResponse(status_code=409, content={"error": str(exc), "probedVersions": exc.version_ids})


@app.exception_handler(NetworkError)
@app.exception_handler(RemoteServiceError)
async def _upstream(request: Request, exc: Exception):
    return JSONResponse(status_code=502, content={"error": str(exc)})


@app.exception_handler(InvalidRequestError)
async def _bad_request(request: Request, exc: InvalidRequestError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# -----------------------
# Endpoints
# -----------------------

@app.post("/generate")
def generate(req: GenerateRequest):
    return backend.handle_generate(req.model_dump())


@app.post("/refine")
def refine(req: RefineRequest):
    return backend.handle_refine(req.model_dump())


@app.post("/validate")
def validate(req: ValidateRequest):
    return backend.handle_validate(req.model_dump())


@app.post("/publish")
def publish(req: PublishRequest):
    return backend.handle_publish(req.model_dump())


@app.post("/refine-loop")
def refine_loop(req: RefineLoopRequest):
    return backend.handle_refine_loop(req.model_dump())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
