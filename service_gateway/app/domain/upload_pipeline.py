"""
Upload relay pipeline: authenticate, stage, convert, stream, clean up, record.

A staged file belongs to exactly one request. It is released by the pipeline
on every failure path, or by StagedImageResponse once the converted image has
been streamed (or the client went away). ``StagedUpload.release`` is
idempotent, so both owners may call it safely.
"""

from __future__ import annotations

import os
import time
from typing import Callable, Optional

import aiofiles
import anyio
import httpx
from fastapi import Request
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse
from starlette.types import Message, Receive, Scope, Send

from shared.errors import (
    AuthenticationError,
    BackendUnreachableError,
    GatewayException,
    PayloadTooLargeError,
    StorageError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..adapters.backend_client import (
    BackendClient,
    BackendImage,
    DEFAULT_PARAMS,
    TransformParams,
    local_reference,
)
from ..auth.api_key import APIKeyAuthenticator
from .audit_log import AuditLog, AuditRecord

UPLOAD_FIELD = "file"
CHUNK_SIZE = 1024 * 1024
MAX_BASENAME_LENGTH = 150
_CREATE_ATTEMPTS = 3

logger = get_logger("gateway.upload_pipeline")


def sanitize_filename(name: Optional[str]) -> str:
    """Reduce a client-supplied filename to a safe basename."""
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = base.replace("\x00", "").strip()
    if base in ("", ".", ".."):
        return "upload"
    if len(base) > MAX_BASENAME_LENGTH:
        stem, ext = os.path.splitext(base)
        ext = ext[:16]
        base = stem[:MAX_BASENAME_LENGTH - len(ext)] + ext
    return base


def staged_filename(original: Optional[str]) -> str:
    return f"img_{time.time_ns()}_{sanitize_filename(original)}"


class StagedUpload:
    """An uploaded file copied into the staging directory."""

    def __init__(self, directory: str, original_name: Optional[str]):
        self.directory = directory
        self.original_name = original_name or ""
        self.size = 0
        self._assign_name()
        self._created = False
        self._released = False

    def _assign_name(self) -> None:
        self.filename = staged_filename(self.original_name)
        self.path = os.path.join(self.directory, self.filename)

    @property
    def reference(self) -> str:
        """Address of the staged file as seen by the backend."""
        return local_reference(self.filename)

    async def write_from(self, upload: UploadFile) -> int:
        """Copy ``upload`` into a freshly created staging file."""
        for _ in range(_CREATE_ATTEMPTS):
            try:
                out = await aiofiles.open(self.path, "xb")
                break
            except FileExistsError:
                self._assign_name()
            except OSError as exc:
                raise StorageError("Failed to save file", details={"path": self.path, "error": str(exc)}) from exc
        else:
            raise StorageError("Failed to save file", details={"path": self.path, "error": "name collision"})

        self._created = True
        try:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                await out.write(chunk)
                self.size += len(chunk)
        except OSError as exc:
            raise StorageError("Failed to write file", details={"path": self.path, "error": str(exc)}) from exc
        finally:
            await out.close()
        return self.size

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Remove the staged file; safe to call more than once."""
        if self._released:
            return
        self._released = True
        if not self._created:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove staged upload", path=self.path, error=str(exc))


class _BodyLimiter:
    """ASGI receive wrapper that aborts once more than ``limit`` bytes arrive."""

    def __init__(self, receive: Receive, limit: int):
        self._receive = receive
        self.limit = limit
        self.received = 0
        self.exceeded = False

    async def __call__(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.request":
            self.received += len(message.get("body", b""))
            if self.received > self.limit:
                self.exceeded = True
                # MultiPartException makes the form parser close its spooled files
                raise MultiPartException("Request body exceeds upload limit")
        return message


class StagedImageResponse(StreamingResponse):
    """Streams a backend image and owns the staged upload until it is sent."""

    def __init__(
        self,
        image: BackendImage,
        staged: StagedUpload,
        *,
        write_timeout: float,
        on_complete: Callable[[int, str], None],
    ):
        headers = {}
        if image.content_length is not None:
            headers["Content-Length"] = str(image.content_length)
        super().__init__(image.iter_bytes(), status_code=200, media_type=image.media_type, headers=headers)
        self.image = image
        self.staged = staged
        self.write_timeout = write_timeout
        self.on_complete = on_complete

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        status, outcome = self.status_code, "ok"
        try:
            with anyio.fail_after(self.write_timeout):
                await super().__call__(scope, receive, send)
        except TimeoutError:
            logger.warning("Response write timed out", path=self.staged.filename)
        except (ClientDisconnect, OSError):
            logger.info("Client disconnected during response", path=self.staged.filename)
        except httpx.TransportError as exc:
            # Headers are already sent; the caller sees a truncated body.
            status, outcome = BackendUnreachableError.status_code, "backend_stream_error"
            logger.error("Backend stream failed", path=self.staged.filename, error=str(exc))
            raise
        except Exception:
            status, outcome = 500, "internal_error"
            raise
        finally:
            self.staged.release()
            self.on_complete(status, outcome)
            with anyio.CancelScope(shield=True):
                await self.image.aclose()


class UploadPipeline:
    """Runs one upload request from authentication to audit record."""

    def __init__(
        self,
        authenticator: APIKeyAuthenticator,
        backend: BackendClient,
        *,
        staging_dir: str,
        max_upload_bytes: int,
        read_timeout: float = 30.0,
        write_timeout: float = 60.0,
        params: TransformParams = DEFAULT_PARAMS,
        audit_log: Optional[AuditLog] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.authenticator = authenticator
        self.backend = backend
        self.staging_dir = staging_dir
        self.max_upload_bytes = max_upload_bytes
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.params = params
        self.audit_log = audit_log
        self.metrics = metrics
        self.logger = logger

    async def handle(self, request: Request) -> StagedImageResponse:
        """Process an upload. Failures are raised as GatewayException subclasses."""
        started = time.perf_counter()

        try:
            account = self.authenticator.authenticate(request)
        except AuthenticationError as exc:
            self._record_metrics(exc.code)
            raise

        staged: Optional[StagedUpload] = None
        filename = ""
        handed_off = False
        try:
            form = await self._read_form(request)
            try:
                upload = self._file_from(form)
                filename = upload.filename or ""
                staged = StagedUpload(self.staging_dir, filename)
                await staged.write_from(upload)
            finally:
                await form.close()

            image = await self.backend.transform(staged.reference, self.params)

            size = staged.size
            response = StagedImageResponse(
                image,
                staged,
                write_timeout=self.write_timeout,
                on_complete=lambda status, outcome: self._finish(account, filename, size, started, status, outcome),
            )
            handed_off = True
            return response
        except Exception as exc:
            if isinstance(exc, GatewayException):
                self._finish(account, filename, staged.size if staged else 0, started, exc.status_code, exc.code)
            else:
                self._finish(account, filename, staged.size if staged else 0, started, 500, "internal_error")
            raise
        finally:
            if staged is not None and not handed_off:
                staged.release()

    async def _read_form(self, request: Request) -> FormData:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_upload_bytes:
            raise PayloadTooLargeError(details={"content_length": int(declared)})

        limiter = _BodyLimiter(request.receive, self.max_upload_bytes)
        limited = Request(request.scope, receive=limiter)
        try:
            with anyio.fail_after(self.read_timeout):
                return await limited.form(max_files=1)
        # python-multipart parse errors derive from ValueError
        except (MultiPartException, StarletteHTTPException, ValueError) as exc:
            if limiter.exceeded:
                raise PayloadTooLargeError(details={"received": limiter.received}) from exc
            raise ValidationError("Failed to parse form", details={"error": str(exc)}) from exc
        except ClientDisconnect as exc:
            raise ValidationError("Failed to parse form", details={"error": "client disconnected"}) from exc
        except TimeoutError as exc:
            raise ValidationError("Failed to parse form", details={"error": "read timeout"}) from exc

    @staticmethod
    def _file_from(form: FormData) -> UploadFile:
        upload = form.get(UPLOAD_FIELD)
        if not isinstance(upload, UploadFile):
            raise ValidationError("No file uploaded")
        return upload

    def _record_metrics(self, outcome: str, size: Optional[int] = None) -> None:
        if self.metrics is not None:
            self.metrics.record_upload(outcome.lower(), size)

    def _finish(self, account: str, filename: str, in_bytes: int, started: float, status: int, outcome: str) -> None:
        duration_ms = int((time.perf_counter() - started) * 1000)
        self._record_metrics(outcome, in_bytes if in_bytes else None)
        self.logger.info(
            "Upload processed",
            file=filename,
            in_bytes=in_bytes,
            status=status,
            duration_ms=duration_ms,
        )
        if self.audit_log is not None:
            self.audit_log.record(AuditRecord(
                account=account,
                filename=filename,
                in_bytes=in_bytes,
                status=status,
                duration_ms=duration_ms,
            ))
