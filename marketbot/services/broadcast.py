"""
Broadcast fan-out.

compose -> awaiting_confirmation -> sending -> completed | cancelled.

The draft (scope, text, resolved recipient list) is stored server side under a
short token; the confirm/cancel buttons carry only that token. The send loop
runs as a background asyncio task, one recipient at a time with a delay
between sends, editing a progress message every N sends. A stop request is
honored between sends. Finished jobs are dropped from memory once persisted.
"""

import asyncio
import logging
import uuid

from marketbot.constants import callbacks as cb
from marketbot.constants.event_types import (
    EVENT_BROADCAST_CANCELLED,
    EVENT_BROADCAST_COMPLETED,
    EVENT_BROADCAST_FAILED,
)
from marketbot.constants.statuses import (
    BROADCAST_AWAITING_CONFIRMATION,
    BROADCAST_CANCELLED,
    BROADCAST_COMPLETED,
    BROADCAST_SENDING,
    PHASE_ADMIN_BROADCAST_TEXT,
    SCOPE_ADMINS,
    SCOPE_ALL,
)
from marketbot.core.config import settings
from marketbot.core.errors import ConcurrencyConflict, NotFoundError, PermissionDeniedError, TransportError, ValidationError
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.entities import BroadcastJob
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import deliver
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import Button
from marketbot.services.metrics import record_failed_atomic_update
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.store.persistence import COLLECTION_BROADCAST_JOBS
from marketbot.services.system_event_service import emit
from marketbot.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


class BroadcastService:
    def __init__(
        self,
        store: EntityStore,
        conversations: ConversationStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        admin_ids: list[int],
        progress_every: int | None = None,
        send_delay_seconds: float | None = None,
    ):
        self.store = store
        self.conversations = conversations
        self.gateway = gateway
        self.composer = composer
        self.admin_ids = list(admin_ids)
        self.progress_every = max(1, progress_every or settings.broadcast_progress_every)
        self.send_delay_seconds = (
            settings.broadcast_send_delay_seconds if send_delay_seconds is None else send_delay_seconds
        )
        self._jobs: dict[str, BroadcastJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _require_admin(self, user_id: int) -> None:
        if user_id not in self.admin_ids:
            raise PermissionDeniedError(f"User {user_id} cannot broadcast")

    def get_job(self, token: str) -> BroadcastJob:
        job = self._jobs.get(token)
        if job is None:
            raise NotFoundError(f"Broadcast {token} not found", user_message="This broadcast is no longer available.")
        return job

    def recipients_for(self, scope: str) -> list[int]:
        if scope == SCOPE_ADMINS:
            return list(dict.fromkeys(self.admin_ids))
        if scope == SCOPE_ALL:
            return [u.id for u in self.store.list_users() if not u.is_banned]
        raise ValidationError(f"Unknown broadcast scope {scope!r}")

    def _persist(self, job: BroadcastJob) -> None:
        self.store.write(COLLECTION_BROADCAST_JOBS, job.token, job.to_document())

    async def begin_compose(self, admin_id: int, chat_id: int, scope: str) -> None:
        """Pick the recipient scope; the admin's next text message becomes the announcement."""
        self._require_admin(admin_id)
        if scope not in (SCOPE_ALL, SCOPE_ADMINS):
            raise ValidationError(f"Unknown broadcast scope {scope!r}")
        await self.conversations.begin(admin_id, PHASE_ADMIN_BROADCAST_TEXT, {"scope": scope})
        await self.gateway.send(chat_id, self.composer.render("broadcast_ask_text", scope=scope))

    async def compose(self, admin_id: int, chat_id: int, text: str) -> BroadcastJob:
        """Store the draft and ask for confirmation."""
        self._require_admin(admin_id)
        text = (text or "").strip()
        if not text:
            raise ValidationError("Empty broadcast", user_message="The announcement cannot be empty.")
        state = await self.conversations.take(admin_id, PHASE_ADMIN_BROADCAST_TEXT)
        scope = state.payload.get("scope", SCOPE_ALL)

        job = BroadcastJob(
            token=uuid.uuid4().hex[:12],
            requester_id=admin_id,
            scope=scope,
            text=text,
            recipients=self.recipients_for(scope),
            status=BROADCAST_AWAITING_CONFIRMATION,
        )
        self._jobs[job.token] = job
        self._persist(job)

        keyboard = [
            [
                Button("Send", cb.build(cb.CB_BROADCAST, "confirm", job.token)),
                Button("Cancel", cb.build(cb.CB_BROADCAST, "cancel", job.token)),
            ]
        ]
        await self.gateway.send(
            chat_id,
            self.composer.render("broadcast_preview", count=len(job.recipients), scope=scope, text=text),
            keyboard=keyboard,
        )
        return job

    async def _swap_status(self, job: BroadcastJob, expected: str, new: str) -> None:
        async with self.store.locks.hold(("broadcast", job.token)):
            if job.status != expected:
                record_failed_atomic_update("broadcast_status", job.token, expected, job.status)
                raise ConcurrencyConflict(
                    f"Broadcast {job.token} is {job.status}",
                    user_message=f"This broadcast is already {job.status}.",
                )
            job.status = new
            self._persist(job)

    async def confirm(self, token: str, admin_id: int, chat_id: int) -> BroadcastJob:
        self._require_admin(admin_id)
        job = self.get_job(token)
        if job.requester_id != admin_id:
            raise PermissionDeniedError("Only the requester can confirm this broadcast")
        await self._swap_status(job, BROADCAST_AWAITING_CONFIRMATION, BROADCAST_SENDING)

        progress_message_id = await deliver(
            self.gateway,
            chat_id,
            self.composer.render("broadcast_started", count=len(job.recipients)),
            keyboard=[[Button("Stop", cb.build(cb.CB_BROADCAST, "stop", token))]],
        )
        task = asyncio.create_task(self._supervise(job, chat_id, progress_message_id))
        task.add_done_callback(self._task_done)
        self._tasks[token] = task
        logger.info(f"Broadcast {token} confirmed by {admin_id}: {len(job.recipients)} recipients")
        return job

    async def cancel(self, token: str, admin_id: int) -> BroadcastJob:
        """Abort before sending; nothing is delivered."""
        self._require_admin(admin_id)
        job = self.get_job(token)
        await self._swap_status(job, BROADCAST_AWAITING_CONFIRMATION, BROADCAST_CANCELLED)
        job.finished_at = utcnow()
        self._persist(job)
        self._jobs.pop(token, None)
        emit("INFO", EVENT_BROADCAST_CANCELLED, user_id=admin_id, payload={"token": token, "sent": 0})
        return job

    def stop(self, token: str, admin_id: int) -> BroadcastJob:
        """Ask a running job to stop after the current send."""
        self._require_admin(admin_id)
        job = self.get_job(token)
        if job.status != BROADCAST_SENDING:
            raise ConcurrencyConflict(
                f"Broadcast {token} is {job.status}", user_message=f"This broadcast is already {job.status}."
            )
        job.stop_requested = True
        logger.info(f"Broadcast {token} stop requested by {admin_id}")
        return job

    async def run(self, job: BroadcastJob, chat_id: int, progress_message_id: int | None = None) -> BroadcastJob:
        total = len(job.recipients)
        for index, recipient in enumerate(job.recipients):
            if job.stop_requested:
                break
            try:
                await self.gateway.send(
                    recipient, self.composer.render("broadcast_announcement", text=job.text)
                )
                job.sent += 1
            except TransportError as e:
                job.failed += 1
                logger.info(f"Broadcast {job.token}: delivery to {recipient} failed: {e}")

            done = index + 1
            if progress_message_id and done % self.progress_every == 0 and done < total:
                try:
                    await self.gateway.edit_text(
                        chat_id,
                        progress_message_id,
                        self.composer.render(
                            "broadcast_progress", done=done, total=total, sent=job.sent, failed=job.failed
                        ),
                        keyboard=[[Button("Stop", cb.build(cb.CB_BROADCAST, "stop", job.token))]],
                    )
                except TransportError as e:
                    logger.debug(f"Broadcast {job.token}: progress edit failed: {e}")
            await asyncio.sleep(self.send_delay_seconds)

        job.status = BROADCAST_CANCELLED if job.stop_requested else BROADCAST_COMPLETED
        job.finished_at = utcnow()
        self._persist(job)

        report = self.composer.render(
            "broadcast_stopped" if job.stop_requested else "broadcast_report",
            sent=job.sent,
            failed=job.failed,
            total=total,
            rate=job.success_rate,
        )
        if progress_message_id:
            try:
                await self.gateway.edit_text(chat_id, progress_message_id, report)
            except TransportError:
                await deliver(self.gateway, chat_id, report)
        else:
            await deliver(self.gateway, chat_id, report)

        emit(
            "INFO",
            EVENT_BROADCAST_CANCELLED if job.stop_requested else EVENT_BROADCAST_COMPLETED,
            user_id=job.requester_id,
            payload={"token": job.token, "sent": job.sent, "failed": job.failed, "total": total},
        )
        logger.info(f"Broadcast {job.token} {job.status}: {job.sent} sent, {job.failed} failed of {total}")
        return job

    async def _supervise(self, job: BroadcastJob, chat_id: int, progress_message_id: int | None) -> BroadcastJob:
        """Run the send loop; an unexpected error still finishes the job and reports to the requester."""
        try:
            return await self.run(job, chat_id, progress_message_id)
        except Exception as e:
            logger.error(f"Broadcast {job.token} aborted after {job.sent} sent: {e}", exc_info=True)
            if job.finished_at is None:
                await self._fail(job, chat_id, e)
            return job
        finally:
            if job.finished_at is not None:
                self._jobs.pop(job.token, None)

    async def _fail(self, job: BroadcastJob, chat_id: int, exc: Exception) -> None:
        total = len(job.recipients)
        job.status = BROADCAST_CANCELLED
        job.finished_at = utcnow()
        self._persist(job)
        emit(
            "ERROR",
            EVENT_BROADCAST_FAILED,
            user_id=job.requester_id,
            payload={"token": job.token, "sent": job.sent, "failed": job.failed, "total": total},
            exc=exc,
        )
        await deliver(
            self.gateway,
            chat_id,
            self.composer.render(
                "broadcast_failed",
                sent=job.sent,
                failed=job.failed,
                remaining=max(0, total - job.sent - job.failed),
                total=total,
            ),
        )

    def _task_done(self, task: asyncio.Task) -> None:
        for token, running in list(self._tasks.items()):
            if running is task:
                self._tasks.pop(token, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Broadcast task ended with an error", exc_info=task.exception())

    async def wait(self, token: str) -> BroadcastJob:
        """Wait for the send loop of token to finish and return the job."""
        task = self._tasks.get(token)
        if task is None:
            return self.get_job(token)
        return await task

    async def shutdown(self) -> None:
        tasks = list(self._tasks.items())
        for token, task in tasks:
            task.cancel()
            logger.warning(f"Broadcast {token} interrupted by shutdown")
        if tasks:
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
        self._tasks.clear()
