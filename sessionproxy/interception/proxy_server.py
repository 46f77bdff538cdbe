"""
Proxy Server for mitmproxy Lifecycle Management

Manages starting, stopping, and monitoring the mitmproxy server, and owns
the start-up sequence the recorder depends on: trust material first, then
the session document, then the listener.
"""

import asyncio
import threading
from typing import Optional

import structlog
from mitmproxy import options
from mitmproxy.tools import dump

from sessionproxy.core.exceptions import NotFoundError, SessionProxyError
from sessionproxy.interception.certificate_manager import CertificateAuthority
from sessionproxy.interception.interceptor import SessionRecorder
from sessionproxy.interception.session_log import SessionLogWriter

logger = structlog.get_logger()


class ProxyServer:
    """
    Manages the mitmproxy proxy server lifecycle

    Start-up failures (no CA, no writable session directory) propagate to
    the caller: the proxy never serves traffic it cannot record or sign.
    """

    def __init__(self, config):
        """
        Initialize the proxy server

        Args:
            config: Application configuration
        """
        self.config = config
        self.logger = logger.bind(component="proxy_server")
        self.authority = CertificateAuthority.from_config(config.certificate)

        self._server_thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._master: Optional[dump.DumpMaster] = None
        self._ready = threading.Event()
        self._running = False
        self._writer: Optional[SessionLogWriter] = None
        self._recorder: Optional[SessionRecorder] = None
        self._session_name: Optional[str] = None
        self._thread_error: Optional[Exception] = None

    @property
    def session_name(self) -> Optional[str]:
        return self._session_name

    def prepare(self):
        """
        Establish trust material and open the session document

        Called by ``start``/``run``; safe to call on its own to fail fast.
        """
        if self._writer is not None:
            return

        if self.config.certificate.auto_generate:
            self.authority.ensure()
        elif not self.authority.exists():
            raise NotFoundError(
                f"CA files missing ({self.authority.cert_path}, {self.authority.key_path}) "
                "and auto_generate is disabled"
            )

        # Parses both files, so a corrupt CA fails here rather than mid-handshake
        self.authority.write_mitmproxy_bundle(self.config.proxy.confdir)

        self._writer = SessionLogWriter.open(self.config.logging.session_dir)
        self._session_name = self._writer.name
        self._recorder = SessionRecorder(self.config.logging, self._writer)

    def _options(self) -> options.Options:
        return options.Options(
            listen_host=self.config.proxy.host,
            listen_port=self.config.proxy.port,
            # Certificate directory
            confdir=str(self.config.proxy.confdir),
            # SSL/TLS options
            ssl_insecure=self.config.proxy.ssl_insecure,
        )

    async def _serve(self):
        """Build the master on the running loop and block until shutdown"""
        self._loop = asyncio.get_running_loop()
        self._master = dump.DumpMaster(
            self._options(),
            with_termlog=False,
            with_dumper=False
        )
        self._master.addons.add(self._recorder)
        self._ready.set()
        await self._master.run()

    def start(self):
        """
        Start the proxy server

        Starts mitmproxy in a separate thread with the session recorder addon.
        """
        if self._running:
            self.logger.warning("Proxy server already running")
            return

        self.prepare()

        self._running = True
        self._thread_error = None
        self._ready.clear()
        self._server_thread = threading.Thread(
            target=self._run_proxy,
            daemon=True,
            name="mitmproxy-server"
        )
        self._server_thread.start()
        self._ready.wait(timeout=5)

        if self._thread_error is not None:
            self._server_thread.join(timeout=5)
            self._server_thread = None
            raise SessionProxyError(f"proxy failed to start: {self._thread_error}") from self._thread_error

        self.logger.info(
            "Proxy server started",
            host=self.config.proxy.host,
            port=self.config.proxy.port,
            ca_cert=str(self.authority.cert_path),
            session=self.session_name
        )

    def run(self):
        """Run the proxy in the calling thread until interrupted"""
        self.prepare()
        self._running = True
        self.logger.info(
            "Proxy server running",
            host=self.config.proxy.host,
            port=self.config.proxy.port,
            session=self.session_name
        )
        try:
            asyncio.run(self._serve())
        except KeyboardInterrupt:
            self.logger.info("Interrupted, shutting down")
        finally:
            self._running = False
            self._master = None
            self._close_writer()

    def stop(self):
        """
        Stop the proxy server

        Gracefully shuts down the proxy, waits for the thread to finish and
        finalizes the session document.
        """
        if not self._running:
            self.logger.warning("Proxy server not running")
            self._close_writer()
            return

        self.logger.info("Stopping proxy server...")

        # Signal shutdown
        if self._master and self._loop:
            self._loop.call_soon_threadsafe(self._master.shutdown)

        # Wait for thread to finish
        if self._server_thread and self._server_thread.is_alive():
            self._server_thread.join(timeout=5)

        self._running = False
        self._master = None
        self._server_thread = None
        self._close_writer()

        self.logger.info("Proxy server stopped")

    def _close_writer(self):
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()

    def is_running(self) -> bool:
        """Check if proxy server is running"""
        return bool(self._running and self._server_thread and self._server_thread.is_alive())

    def get_status(self) -> dict:
        """
        Get proxy server status

        Returns:
            Dictionary with status information
        """
        status = {
            "running": self.is_running(),
            "host": self.config.proxy.host,
            "port": self.config.proxy.port,
            "ca_cert": str(self.authority.cert_path),
            "session_dir": str(self.config.logging.session_dir),
            "session": self.session_name
        }

        # Add statistics if available
        if self._recorder:
            status["statistics"] = self._recorder.get_stats()

        return status

    def _run_proxy(self):
        """
        Run the proxy server

        This runs in a separate thread and blocks until shutdown.
        """
        try:
            self.logger.debug("Proxy thread starting...")
            asyncio.run(self._serve())
            self.logger.debug("Proxy thread stopped")
        except Exception as e:
            self.logger.error("Proxy thread error", error=str(e))
            self._thread_error = e
            self._running = False
        finally:
            # The session document is finalized whichever way the loop ends
            self._close_writer()
            self._ready.set()

    def __enter__(self):
        """Context manager entry"""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.stop()
        return False
