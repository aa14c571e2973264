"""Remote write receiver using FastAPI."""
from typing import Callable, Mapping, Optional, Tuple
import logging
import socket
import threading
import time

import uvicorn
from fastapi import FastAPI, Request, Response
from prometheus_client import CollectorRegistry, Counter, generate_latest, CONTENT_TYPE_LATEST
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from rwcompliance.config import ReceiverConfig
from rwcompliance.decoder import decode_write_request
from rwcompliance.errors import DecodeError
from rwcompliance.exposition import ExpositionHandler
from rwcompliance.series import Batch

logger = logging.getLogger(__name__)

# Sees each decoded write before it is buffered. Returning a status code
# rejects the write with that code; None lets it through.
WriteHook = Callable[[Mapping[str, str], Batch], Optional[int]]


class BatchBuffer:
    """
    Accumulates decoded batches for a single case run.

    Appends may come from many request tasks at once. Each batch is stored
    whole, so samples of one request are never interleaved with another's.
    """

    def __init__(self):
        self._batches = []
        self._closed = False
        self._lock = threading.Lock()

    def append(self, batch: Batch) -> bool:
        """Store ``batch``; returns False if the buffer is already closed."""
        with self._lock:
            if self._closed:
                return False
            self._batches.append(batch)
            return True

    def close(self):
        """Stop accepting batches. Reads remain possible."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def batches(self) -> Tuple[Batch, ...]:
        """Snapshot of the received batches in arrival order."""
        with self._lock:
            return tuple(self._batches)

    def sample_count(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._batches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._batches)


class ReceiverMetrics:
    """Self-monitoring metrics for the receiver."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests_total = Counter(
            "rw_receiver_requests_total",
            "Write requests handled, by response code",
            ["code"],
            registry=self.registry
        )

        self.samples_total = Counter(
            "rw_receiver_samples_total",
            "Samples decoded and buffered",
            registry=self.registry
        )

        self.decode_errors_total = Counter(
            "rw_receiver_decode_errors_total",
            "Write requests rejected because they could not be decoded",
            registry=self.registry
        )

    def record_request(self, code: int):
        self.requests_total.labels(code=str(code)).inc()

    def record_samples(self, count: int):
        self.samples_total.inc(count)

    def record_decode_error(self):
        self.decode_errors_total.inc()


class Receiver:
    """Serves the scrape endpoint and accepts remote write pushes for one case run."""

    def __init__(
        self,
        config: ReceiverConfig,
        buffer: BatchBuffer,
        exposition: ExpositionHandler,
        write_hook: Optional[WriteHook] = None
    ):
        """
        Initialize the receiver.

        Args:
            config: Receiver settings
            buffer: Destination for decoded batches
            exposition: Handler served at the metrics path
            write_hook: Optional per-case hook consulted before buffering
        """
        self.config = config
        self.buffer = buffer
        self.exposition = exposition
        self.write_hook = write_hook
        self.metrics = ReceiverMetrics()
        self.decode_errors = 0
        self.app = FastAPI(
            title="Remote Write Compliance Receiver",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self.address: Optional[Tuple[str, int]] = None

        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.post(self.config.write_path)
        async def push(request: Request):
            """Decode one remote write request and buffer it."""
            try:
                body = await request.body()
            except ClientDisconnect:
                # Never buffer a partially received payload.
                logger.warning("Sender disconnected before the request body was complete")
                self.metrics.record_request(400)
                return Response("client disconnected", status_code=400, media_type="text/plain")

            try:
                batch = await run_in_threadpool(
                    decode_write_request, body, request.headers.get("content-encoding")
                )
            except DecodeError as e:
                self.decode_errors += 1
                self.metrics.record_decode_error()
                self.metrics.record_request(400)
                logger.warning(f"Rejected write request ({len(body)} bytes): {e}")
                return Response(str(e), status_code=400, media_type="text/plain")

            if self.write_hook is not None:
                code = self.write_hook(request.headers, batch)
                if code is not None:
                    logger.info(f"Write request with {len(batch)} samples rejected with {code}")
                    self.metrics.record_request(code)
                    return Response(f"rejected with status {code}", status_code=code, media_type="text/plain")

            if not self.buffer.append(batch):
                logger.warning(f"Write request with {len(batch)} samples arrived after the run closed")
                self.metrics.record_request(503)
                return Response("receiver is closed", status_code=503, media_type="text/plain")

            self.metrics.record_samples(len(batch))
            self.metrics.record_request(200)
            logger.debug(f"Buffered batch of {len(batch)} samples")
            return Response(status_code=200)

        @self.app.get(self.config.metrics_path)
        def scrape():
            """Exposition endpoint scraped by the sender."""
            body, content_type = self.exposition.render()
            return Response(content=body, media_type=content_type)

        @self.app.get("/healthz")
        async def healthz():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": time.time()}

        @self.app.get("/status")
        async def status():
            """Summary of what has been received so far."""
            return {
                "batches": len(self.buffer),
                "samples": self.buffer.sample_count(),
                "decode_errors": self.decode_errors,
                "closed": self.buffer.closed,
            }

        @self.app.get("/receiver/metrics")
        def receiver_metrics():
            """Receiver self-metrics."""
            return Response(generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    @property
    def scrape_target(self) -> str:
        """host:port the sender should scrape."""
        host, port = self._require_address()
        return f"{host}:{port}"

    @property
    def write_url(self) -> str:
        """URL the sender should push to."""
        host, port = self._require_address()
        return f"http://{host}:{port}{self.config.write_path}"

    def _require_address(self) -> Tuple[str, int]:
        if self.address is None:
            raise RuntimeError("Receiver has not been started")
        return self.address

    def start(self):
        """Bind the listening socket and serve in a background thread."""
        if self._thread is not None:
            raise RuntimeError("Receiver already started")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.config.host, self.config.port))
        self._socket = sock
        self.address = sock.getsockname()[:2]

        server_config = uvicorn.Config(
            self.app,
            log_level="warning",
            log_config=None,
            access_log=False,
            lifespan="off"
        )
        self._server = uvicorn.Server(server_config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name=f"receiver-{self.address[1]}",
            daemon=True
        )
        self._thread.start()

        deadline = time.monotonic() + self.config.startup_timeout_s
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise RuntimeError(f"Receiver failed to start on {self.scrape_target}")
            time.sleep(0.01)

        logger.info(f"Receiver listening on {self.scrape_target} (write path {self.config.write_path})")

    def stop(self, timeout: float = 5.0):
        """Shut the server down, then close the buffer to any straggling writes."""
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Receiver thread did not exit in time")
        self.buffer.close()
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._thread = None
        self._socket = None
        logger.info(f"Receiver stopped after {len(self.buffer)} batches")
