from __future__ import annotations

import asyncio
import functools
import threading
from datetime import datetime
from typing import Callable, Mapping, Optional

from .config import TransmitterConfig
from .constants import (
    FAILED_LABEL,
    TRANSMIT_LABEL_STATUS,
    FailureKind,
    PropertyKey,
    SubmissionState,
)
from .elements import ElementRegistry, Scheduler
from .errors import (
    ArchiveIOError,
    AssemblyError,
    Busy,
    Cancelled,
    MediPiError,
    NothingToSend,
    ServerRejected,
    TransportError,
)
from .logging import MediPiLogger
from .models import SubmissionOutcome
from .pipeline.archive import ArchiveWriter
from .pipeline.assembler import Selection, assemble_payload, selection_predicate
from .security.credentials import CredentialBundle, resolve_credentials
from .security.envelope import EnvelopeBuilder
from .status import StatusChannel
from .transport.base import Transport
from .transport.https import HttpsTransport
from .utils import utc_now

CredentialResolver = Callable[[], CredentialBundle]

ARCHIVE_ERROR_MESSAGE = (
    "Cannot save outbound message payload to local drive - check the configured directory: "
    + PropertyKey.OUTBOUND_PAYLOAD
)


class SubmissionOrchestrator:
    """
    Drives one submission: assemble, resolve credentials, build the envelope,
    archive, transmit, report.

    At most one submission is in flight per instance; a second request while
    busy is rejected with Busy. Cancellation is cooperative and checked
    between stages. A cancel that lands after the transport call returns is
    reported as a cancelled failure and no scheduler event is written, even if
    the concentrator accepted the upload.
    """

    def __init__(
        self,
        registry: ElementRegistry,
        transport: Transport,
        credential_resolver: CredentialResolver,
        envelope_builder: Optional[EnvelopeBuilder] = None,
        archive_writer: Optional[ArchiveWriter] = None,
        scheduler: Optional[Scheduler] = None,
        status: Optional[StatusChannel] = None,
        clear_after_transmission: bool = False,
        logger: Optional[MediPiLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.transport = transport
        self.credential_resolver = credential_resolver
        self.logger = logger or MediPiLogger()
        self.envelope_builder = envelope_builder or EnvelopeBuilder(logger=self.logger)
        self.archive_writer = archive_writer
        self.scheduler = scheduler if scheduler is not None else registry.scheduler()
        self.status = status or StatusChannel(logger=self.logger)
        self.clear_after_transmission = clear_after_transmission
        self.clock = clock
        self._lock = threading.Lock()
        self._state = SubmissionState.IDLE
        self._cancel_requested = threading.Event()
        self._generation = 0

    @classmethod
    def from_config(
        cls,
        config: TransmitterConfig,
        registry: ElementRegistry,
        transport: Optional[Transport] = None,
        scheduler: Optional[Scheduler] = None,
        status: Optional[StatusChannel] = None,
        logger: Optional[MediPiLogger] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SubmissionOrchestrator":
        logger = logger or MediPiLogger()
        return cls(
            registry=registry,
            transport=transport or HttpsTransport.from_config(config, logger=logger),
            credential_resolver=lambda: resolve_credentials(config, environ),
            envelope_builder=EnvelopeBuilder.from_config(config, logger=logger),
            archive_writer=ArchiveWriter.from_config(config),
            scheduler=scheduler,
            status=status,
            clear_after_transmission=config.clear_all_after_transmission,
            logger=logger,
        )

    @property
    def state(self) -> SubmissionState:
        with self._lock:
            return self._state

    @property
    def is_transmitting(self) -> bool:
        return self.state != SubmissionState.IDLE

    def start(self, selection: Selection = None) -> "asyncio.Task[SubmissionOutcome]":
        """Run a submission as a background task; raises Busy synchronously."""
        self._acquire()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._release()
            raise
        task = loop.create_task(self._run_acquired(selection))
        task.add_done_callback(functools.partial(self._release_if_cancelled, self._generation))
        return task

    async def run(self, selection: Selection = None) -> SubmissionOutcome:
        self._acquire()
        return await self._run_acquired(selection)

    def cancel(self) -> None:
        """Request cancellation; honored at the next checkpoint."""
        if self.is_transmitting:
            self._cancel_requested.set()

    def _acquire(self) -> None:
        with self._lock:
            if self._state != SubmissionState.IDLE:
                raise Busy("A submission is already in flight")
            self._state = SubmissionState.PREPARING
            self._cancel_requested.clear()
            self._generation += 1

    def _release(self) -> None:
        with self._lock:
            self._state = SubmissionState.IDLE

    def _release_if_cancelled(
        self, generation: int, task: "asyncio.Task[SubmissionOutcome]"
    ) -> None:
        # A task cancelled before its first step never reaches _finalize.
        if not task.cancelled():
            return
        with self._lock:
            if generation != self._generation or self._state == SubmissionState.IDLE:
                return
        self.logger.warning("Submission cancelled before it started")
        self._cancel_requested.clear()
        self.status.set_busy(False)
        self._transition(SubmissionState.IDLE)

    def _transition(self, state: SubmissionState) -> None:
        with self._lock:
            self._state = state
        self.status.set_state(state)

    def _checkpoint(self) -> None:
        if self._cancel_requested.is_set():
            raise Cancelled("Submission cancelled")

    async def _run_acquired(self, selection: Selection) -> SubmissionOutcome:
        status = self.status
        logger = self.logger
        credentials: Optional[CredentialBundle] = None
        outcome: Optional[SubmissionOutcome] = None
        upload_id: Optional[str] = None

        try:
            status.set_state(SubmissionState.PREPARING)
            status.set_busy(True)
            status.publish_status(TRANSMIT_LABEL_STATUS[1])

            try:
                payload = assemble_payload(
                    self.registry.snapshot(),
                    selection_predicate(selection),
                    uploaded_at=self.clock(),
                )
            except NothingToSend:
                logger.info("Nothing to transmit")
                outcome = SubmissionOutcome.nothing_to_send()
                return outcome

            upload_id = payload.upload_id
            logger = self.logger.bind(upload_id)
            logger.info("Submission assembled", devices=payload.device_tokens())
            self._checkpoint()

            with logger.stage("credentials"):
                credentials = await asyncio.to_thread(self.credential_resolver)
            self._checkpoint()

            with logger.stage("envelope"):
                envelope = self.envelope_builder.build(payload, credentials, signing_time=self.clock())
            self._checkpoint()

            if self.archive_writer is not None:
                try:
                    with logger.stage("archive"):
                        path = await asyncio.to_thread(self.archive_writer.write, payload, self.clock())
                    logger.info("Outbound payload archived", path=str(path))
                except ArchiveIOError as exc:
                    status.notify_error(f"{ARCHIVE_ERROR_MESSAGE}: {exc}")
            self._checkpoint()

            self._transition(SubmissionState.SENDING)
            with logger.stage("transport"):
                result = await self.transport.send(envelope, credentials)

            self._transition(SubmissionState.REPORTING)
            self._checkpoint()
            if not result.success:
                raise ServerRejected(result.response_text, result.status_code)

            if self.scheduler is not None and self.scheduler.is_active():
                self.scheduler.record_transmitted(self.clock(), payload.device_tokens())
            status.publish_status(TRANSMIT_LABEL_STATUS[2])
            status.notify(f"Transmission Successful: {result.response_text}")
            outcome = SubmissionOutcome.success(
                result.response_text, upload_id, payload.device_tokens()
            )
            return outcome

        except MediPiError as exc:
            outcome = self._report_failure(exc, upload_id, logger)
            return outcome
        except BaseException as exc:
            with self._lock:
                self._state = SubmissionState.REPORTING
            status.publish_status(FAILED_LABEL)
            status.notify_error(f"Error transmitting message to recipient: {exc}")
            logger.error("Submission aborted", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            await self._finalize(credentials, outcome, logger)

    def _report_failure(
        self, exc: MediPiError, upload_id: Optional[str], logger: MediPiLogger
    ) -> SubmissionOutcome:
        with self._lock:
            self._state = SubmissionState.REPORTING
        response_text = ""
        if isinstance(exc, ServerRejected):
            response_text = exc.response_text
            message = f"Transmission Failed: {response_text}"
        elif isinstance(exc, TransportError):
            response_text = str(exc)
            message = f"Transmission Failed: {response_text}"
        elif isinstance(exc, Cancelled):
            message = "Transmission cancelled"
        elif isinstance(exc, AssemblyError):
            message = f"Error in creating the message to be transmitted: {exc}"
        else:
            message = f"Error encrypting and signing the data payload: {exc}"

        logger.error(
            "Submission failed",
            kind=exc.kind.value,
            error=str(exc),
            reason=getattr(exc, "reason", None) or getattr(exc, "sub_kind", None),
        )
        self.status.publish_status(FAILED_LABEL)
        self.status.notify_error(message)
        return SubmissionOutcome.failure(
            exc.kind,
            response_text=response_text,
            cause=exc,
            upload_id=upload_id,
        )

    async def _finalize(
        self,
        credentials: Optional[CredentialBundle],
        outcome: Optional[SubmissionOutcome],
        logger: MediPiLogger,
    ) -> None:
        try:
            if credentials is not None:
                credentials.close()
            if self.scheduler is not None and self.scheduler.is_active():
                self.scheduler.set_running(False)
            sent_something = outcome is None or outcome.kind != FailureKind.NOTHING_TO_SEND
            if self.clear_after_transmission and sent_something:
                await asyncio.to_thread(self.registry.clear_all)
                logger.info("Device data cleared after transmission")
        finally:
            self._cancel_requested.clear()
            self.status.set_busy(False)
            self._transition(SubmissionState.IDLE)
