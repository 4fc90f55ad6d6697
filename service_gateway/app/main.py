"""
Image conversion gateway service.
"""

import asyncio
import os
import signal
import sys
import threading
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from shared.base_service import BaseService
from shared.config import GatewayConfig, get_config
from shared.errors import BackendUnhealthyError, CredentialParseError

from .adapters.backend_client import BackendClient
from .auth.api_key import APIKeyAuthenticator
from .auth.credential_store import CredentialStore
from .domain.audit_log import AuditLog
from .domain.upload_pipeline import UploadPipeline


class GatewayService(BaseService):
    """Authenticated upload -> imgproxy -> caller relay."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        credential_store: Optional[CredentialStore] = None,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__("gateway", config or get_config())

        self.credential_store = credential_store or CredentialStore.load(self.config.token_file)
        os.makedirs(self.config.temp_dir, mode=0o755, exist_ok=True)

        self.authenticator = APIKeyAuthenticator(self.credential_store)
        self.backend_client = BackendClient(
            self.config.backend_url,
            timeout=self.config.backend_timeout,
            transport=backend_transport,
            metrics=self.metrics,
        )
        self.audit_log = AuditLog.open(self.config.log_file)
        self.pipeline = UploadPipeline(
            self.authenticator,
            self.backend_client,
            staging_dir=self.config.temp_dir,
            max_upload_bytes=self.config.max_file_size,
            read_timeout=self.config.read_timeout,
            write_timeout=self.config.write_timeout,
            audit_log=self.audit_log,
            metrics=self.metrics,
        )
        self._reload_loop: Optional[asyncio.AbstractEventLoop] = None

        @self.app.on_event("startup")
        async def _startup():
            self._install_reload_handler()

        @self.app.on_event("shutdown")
        async def _shutdown():
            self._remove_reload_handler()
            await self.backend_client.close()
            if self.audit_log is not None:
                self.audit_log.close()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.post("/")
        async def convert(request: Request):
            """Convert one uploaded image."""
            return await self.pipeline.handle(request)

    async def _check_dependencies(self) -> None:
        if not await self.backend_client.health():
            raise BackendUnhealthyError()

    def reload_credentials(self) -> bool:
        """Re-read the credential file; the current table survives a bad file."""
        try:
            count = self.credential_store.reload()
        except CredentialParseError as exc:
            self.metrics.record_credential_reload("error")
            self.logger.error(
                "Credential reload failed, keeping current credentials",
                path=exc.path,
                error=exc.message,
                count=len(self.credential_store),
            )
            return False

        self.metrics.record_credential_reload("ok")
        self.logger.info("Credentials reloaded", path=self.credential_store.path, count=count)
        return True

    def _install_reload_handler(self) -> None:
        # Signal handlers can only be installed from the main thread.
        if not hasattr(signal, "SIGHUP") or threading.current_thread() is not threading.main_thread():
            return
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGHUP, self._schedule_reload)
        self._reload_loop = loop
        self.logger.info("Credential reload armed", signal="SIGHUP")

    def _remove_reload_handler(self) -> None:
        if self._reload_loop is not None:
            self._reload_loop.remove_signal_handler(signal.SIGHUP)
            self._reload_loop = None

    def _schedule_reload(self) -> None:
        future = self._reload_loop.run_in_executor(None, self.reload_credentials)
        future.add_done_callback(self._reload_done)

    def _reload_done(self, future: "asyncio.Future[bool]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.metrics.record_credential_reload("error")
            self.logger.error("Credential reload crashed", error=str(exc), exc_info=exc)


def create_app(config: Optional[GatewayConfig] = None, **kwargs) -> FastAPI:
    """Create FastAPI application."""
    service = GatewayService(config, **kwargs)
    return service.app


def main() -> int:
    config = get_config()
    try:
        service = GatewayService(config)
    except CredentialParseError as exc:
        print(f"load tokens: {exc.message}", file=sys.stderr)
        return 1

    service.logger.info(
        "Gateway listening",
        listen_addr=config.listen_addr,
        backend_url=config.backend_url,
        staging_dir=config.temp_dir,
    )
    service.run()
    service.logger.info("Gateway stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
