"""Admin decisions arriving as inline keyboard callbacks.

Payment:  pending -> approved | rejected
Media:    pending -> approved                   (0 or 1 root folder)
          pending -> root selection -> approved (2+ root folders)
          pending -> rejected

Every callback is answered: with the outcome, with "Unknown action." for
data that does not decode, or with an ``Error: ...`` alert when processing
fails. Failures never escape to the poll loop.
"""

import structlog
from telegram import CallbackQuery, Message

from src.clients.factory import ClientFactory
from src.clients.telegram import ChatClient, has_photo
from src.storage.documents import DocumentStore, save_workflow_state
from src.storage.models import MessageRef, PendingMediaApproval, Subscription, WorkflowState
from src.workflow.commands import (
    ApproveMedia,
    ApprovePayment,
    ChooseRoot,
    Command,
    RejectMedia,
    RejectPayment,
    UnknownCommand,
    parse_command,
)
from src.workflow.errors import (
    InvalidStateError,
    RecordNotFoundError,
    UpstreamError,
    WorkflowError,
)
from src.workflow.media import MediaRequestService
from src.workflow.messages import (
    MEDIA_REJECTED_TEXT,
    NOT_AUTHORIZED,
    media_approved_text,
    payment_result_text,
    root_keyboard,
    root_prompt_text,
)
from src.workflow.payments import PaymentService

logger = structlog.get_logger(__name__)


def admin_name(query: CallbackQuery) -> str:
    user = query.from_user
    return user.username or user.first_name or "admin"


def callback_message(query: CallbackQuery) -> Message | None:
    """The message carrying the pressed button, if it is still accessible."""
    return query.message if isinstance(query.message, Message) else None


def is_admin_query(query: CallbackQuery, admin_ids: list[str]) -> bool:
    """Admin ids are chat ids; a press counts when the user or the chat is listed."""
    if str(query.from_user.id) in admin_ids:
        return True
    message = callback_message(query)
    return message is not None and str(message.chat_id) in admin_ids


class DecisionHandler:
    """Decodes callbacks and drives the payment and media state machines."""

    def __init__(
        self,
        store: DocumentStore,
        chat: ChatClient,
        payments: PaymentService,
        media: MediaRequestService,
    ):
        self.store = store
        self.chat = chat
        self.payments = payments
        self.media = media

    async def handle(
        self,
        query: CallbackQuery,
        state: WorkflowState,
        clients: ClientFactory,
        admin_ids: list[str],
    ) -> None:
        """Process one callback and answer it."""
        if not is_admin_query(query, admin_ids):
            logger.warning("decision_rejected_not_admin", user_id=query.from_user.id)
            await self.chat.answer_callback(query.id, NOT_AUTHORIZED, show_alert=True)
            return

        command = parse_command(query.data)
        try:
            answer = await self.dispatch(command, query, state, clients)
            show_alert = isinstance(command, UnknownCommand)
        except WorkflowError as e:
            logger.warning("decision_refused", command=type(command).__name__, error=str(e))
            answer = f"Error: {e}"
            show_alert = True
        except Exception as e:
            logger.exception("decision_failed", command=type(command).__name__, error=str(e))
            answer = f"Error: {str(e) or 'Failed'}"
            show_alert = True
        await self.chat.answer_callback(query.id, answer, show_alert=show_alert)

    async def dispatch(
        self,
        command: Command,
        query: CallbackQuery,
        state: WorkflowState,
        clients: ClientFactory,
    ) -> str:
        """Apply a decoded command; returns the callback answer text."""
        match command:
            case ApprovePayment(subscription_id=subscription_id):
                approved = await self.payments.approve(subscription_id, clients)
                await self._resolve_payment(approved, True, query, state)
                return "Payment approved."
            case RejectPayment(subscription_id=subscription_id):
                rejected = await self.payments.reject(subscription_id)
                await self._resolve_payment(rejected, False, query, state)
                return "Payment rejected."
            case ApproveMedia(request_id=request_id):
                return await self._approve_media(request_id, query, state, clients)
            case ChooseRoot(request_id=request_id, index=index):
                return await self._choose_root(request_id, index, query, state, clients)
            case RejectMedia(request_id=request_id):
                await self.media.reject(request_id, clients)
                await self._edit_callback_message(query, MEDIA_REJECTED_TEXT)
                return "Media request rejected."
            case UnknownCommand(raw=raw):
                logger.info("decision_unknown_action", data=raw)
                return "Unknown action."

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def _resolve_payment(
        self,
        sub: Subscription,
        approved: bool,
        query: CallbackQuery,
        state: WorkflowState,
    ) -> None:
        """Edit every delivered copy of the notification to the outcome."""
        text = payment_result_text(sub, approved, admin_name(query))
        refs = list(state.payment_messages.get(sub.id, []))
        message = callback_message(query)
        if message is not None and not any(
            str(ref.chat_id) == str(message.chat_id) and ref.message_id == message.message_id
            for ref in refs
        ):
            refs.append(
                MessageRef(
                    chat_id=message.chat_id,
                    message_id=message.message_id,
                    has_photo=has_photo(message),
                )
            )

        for ref in refs:
            result = await self.chat.edit_message(ref.chat_id, ref.message_id, text, ref.has_photo)
            if not result.ok:
                logger.warning(
                    "payment_message_edit_failed",
                    subscription_id=sub.id,
                    chat_id=ref.chat_id,
                    error=result.error,
                )

        if state.payment_messages.pop(sub.id, None) is not None:
            await save_workflow_state(self.store, state)

    # -------------------------------------------------------------------------
    # Media requests
    # -------------------------------------------------------------------------

    async def _approve_media(
        self,
        request_id: str,
        query: CallbackQuery,
        state: WorkflowState,
        clients: ClientFactory,
    ) -> str:
        record = await self.media.get(request_id)
        if not record.is_open():
            raise InvalidStateError("Media request is no longer pending.")
        options = await self.media.folder_options(record, clients)

        if len(options.roots) > 1:
            state.pending_media_approvals[request_id] = PendingMediaApproval(
                request_id=request_id,
                roots=options.roots,
                profile_id=options.profile_id,
            )
            await save_workflow_state(self.store, state)

            message = callback_message(query)
            chat_id = message.chat_id if message is not None else query.from_user.id
            result = await self.chat.send_message(
                chat_id, root_prompt_text(record), root_keyboard(request_id, options.roots)
            )
            if not result.ok:
                raise UpstreamError(f"Could not send folder choices: {result.error}")
            logger.info("media_root_prompted", request_id=request_id, roots=len(options.roots))
            return "Select root folder."

        root = options.roots[0] if options.roots else None
        approved = await self.media.approve(
            request_id, clients, root_folder=root, profile_id=options.profile_id
        )
        await self._edit_callback_message(query, media_approved_text(approved))
        return "Media request approved."

    async def _choose_root(
        self,
        request_id: str,
        index: int,
        query: CallbackQuery,
        state: WorkflowState,
        clients: ClientFactory,
    ) -> str:
        pending = state.pending_media_approvals.get(request_id)
        if pending is None:
            # State was lost between prompt and choice; capture the folders again
            record = await self.media.get(request_id)
            options = await self.media.folder_options(record, clients)
            pending = PendingMediaApproval(
                request_id=request_id,
                roots=options.roots,
                profile_id=options.profile_id,
            )
            state.pending_media_approvals[request_id] = pending
            await save_workflow_state(self.store, state)

        if index >= len(pending.roots):
            raise RecordNotFoundError("Root folder not found.")
        root = pending.roots[index]

        approved = await self.media.approve(
            request_id, clients, root_folder=root, profile_id=pending.profile_id
        )
        state.pending_media_approvals.pop(request_id, None)
        await save_workflow_state(self.store, state)

        await self._edit_callback_message(query, media_approved_text(approved))
        return "Media request approved."

    async def _edit_callback_message(self, query: CallbackQuery, text: str) -> None:
        message = callback_message(query)
        if message is None:
            return
        result = await self.chat.edit_message(
            message.chat_id, message.message_id, text, has_photo(message)
        )
        if not result.ok:
            logger.warning(
                "decision_message_edit_failed", chat_id=message.chat_id, error=result.error
            )
