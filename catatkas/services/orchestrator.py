"""Drives one inbound chat event through throttling, recognition and the transaction workflow."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from catatkas.logging_config import LoggerAdapter, get_logger
from catatkas.models import User
from catatkas.schemas.session import SessionState, TransactionFields
from catatkas.schemas.webhook import InboundEvent, Reply, ReplyButton
from catatkas.services import transaction_service
from catatkas.services.debounce_service import DebounceGuard
from catatkas.services.intent_service import (
    CommandInterpreter,
    Intent,
    describe,
    is_intent_allowed,
)
from catatkas.services.messaging_service import MessagingClient
from catatkas.services.rate_limit_service import RateLimiter
from catatkas.services.result import ErrorCode
from catatkas.services.session_service import SessionStore, UsageError
from catatkas.services.state_machine import (
    EditableField,
    InvalidTransitionError,
    MenuStage,
    TransactionType,
    advance,
    go_back,
    resume_stage,
    step_of,
    transition,
)
from catatkas.services.store import StoreUnavailableError

logger = get_logger("orchestrator")

MAX_RETRIES = 3

CANCEL_WORDS = {"batal", "cancel"}
YES_WORDS = {"ya", "y", "iya", "lanjut", "simpan", "ok", "oke"}
NO_WORDS = {"tidak", "tdk", "no", "n"}
SKIP_WORDS = {"-", "skip", "lewati"}

BUTTON_MENU_MAIN = "menu_main"
BUTTON_TYPE_INCOME = "txn_type_income"
BUTTON_TYPE_EXPENSE = "txn_type_expense"
BUTTON_CATEGORY_PREFIX = "cat_"
BUTTON_CONFIRM = "txn_confirm_yes"
BUTTON_EDIT_PREFIX = "txn_edit_"
BUTTON_SKIP_DESCRIPTION = "txn_skip_description"
BUTTON_CANCEL = "txn_cancel"
BUTTON_BACK = "nav_back"
BUTTON_RETRY = "error_retry"
BUTTON_COMMAND_PREFIX = "cmd_"

TYPE_LABELS = {
    TransactionType.INCOME: "Penjualan",
    TransactionType.EXPENSE: "Pengeluaran",
}

TYPE_INTENTS = {
    TransactionType.INCOME: Intent.RECORD_SALE,
    TransactionType.EXPENSE: Intent.RECORD_EXPENSE,
}

REPORT_PERIODS = {
    Intent.VIEW_REPORT_TODAY: ("today", "hari ini"),
    Intent.VIEW_REPORT_WEEK: ("week", "minggu ini"),
    Intent.VIEW_REPORT_MONTH: ("month", "bulan ini"),
}

MSG_MAIN_MENU = "Menu utama. Pilih aksi atau ketik perintah, misalnya 'catat penjualan' atau 'laporan'."
MSG_CHOOSE_TYPE = "Pilih jenis transaksi:"
MSG_CHOOSE_CATEGORY = "Pilih kategori {label} (ketik nomor atau nama):\n{options}"
MSG_NO_CATEGORIES = "Belum ada kategori {label}. Hubungi admin untuk menambahkannya."
MSG_UNKNOWN_CATEGORY = "Kategori tidak ditemukan. Ketik nomor atau nama kategori dari daftar."
MSG_ENTER_AMOUNT = "Masukkan jumlah (contoh: 150000 atau 1.500.000):"
MSG_INVALID_AMOUNT = "Jumlah tidak valid. Masukkan angka antara Rp 1 dan Rp 999.999.999.999."
MSG_ENTER_DESCRIPTION = "Tambahkan keterangan, atau ketik '-' untuk melewati:"
MSG_CONFIRM = (
    "Konfirmasi transaksi:\n"
    "Jenis: {type}\n"
    "Kategori: {category}\n"
    "Jumlah: {amount}\n"
    "Keterangan: {description}\n\n"
    "Simpan transaksi ini?"
)
MSG_SAVED = "Transaksi tersimpan: {type} {amount} ({category})."
MSG_SAVE_FAILED = "Transaksi gagal disimpan. Data Anda aman, silakan coba lagi."
MSG_RETRY_ABANDONED = "Transaksi masih gagal disimpan setelah {retries} kali percobaan dan dibatalkan. Silakan catat ulang nanti."
MSG_NOTHING_TO_RETRY = "Tidak ada transaksi yang perlu dicoba ulang."
MSG_RECOVERY_OFFER = "Ada transaksi yang belum selesai ({summary}). Lanjutkan? Balas 'ya' untuk melanjutkan atau 'tidak' untuk membuang."
MSG_RECOVERY_DISCARDED = "Transaksi yang belum selesai sudah dibuang."
MSG_CANCELLED = "Transaksi dibatalkan."
MSG_EDIT_CANCELLED = "Perubahan dibatalkan."
MSG_NOT_RECOGNIZED = "Perintah tidak dikenali."
MSG_SUGGESTIONS = "Mungkin maksud Anda:"
MSG_CONFIRM_COMMAND = "Apakah maksud Anda '{description}'?"
MSG_FORBIDDEN = "Maaf, peran Anda tidak diizinkan untuk '{description}'."
MSG_RATE_LIMITED = "Terlalu banyak pesan. Silakan coba lagi dalam {seconds} detik."
MSG_TEMPORARY_ERROR = "Sistem sedang sibuk. Silakan coba beberapa saat lagi."
MSG_UNKNOWN_BUTTON = "Tombol ini sudah tidak berlaku."
MSG_REPORT = (
    "Laporan {period}\n"
    "Pemasukan: {income}\n"
    "Pengeluaran: {expense}\n"
    "Saldo bersih: {net}\n"
    "Jumlah transaksi: {count}"
)
MSG_BALANCE = "Saldo saat ini: {net}\nPemasukan: {income}\nPengeluaran: {expense}"
MSG_HELP = (
    "Perintah yang tersedia:\n"
    "- catat penjualan (cp)\n"
    "- catat pengeluaran\n"
    "- lihat laporan hari ini / minggu ini / bulan ini (ll)\n"
    "- lihat saldo\n"
    "- menu\n"
    "Ketik 'batal' kapan saja untuk membatalkan."
)

MAIN_MENU_BUTTONS = [
    ReplyButton(id=f"{BUTTON_COMMAND_PREFIX}{Intent.RECORD_SALE.value}", title="Catat Penjualan"),
    ReplyButton(id=f"{BUTTON_COMMAND_PREFIX}{Intent.RECORD_EXPENSE.value}", title="Catat Pengeluaran"),
    ReplyButton(id=f"{BUTTON_COMMAND_PREFIX}{Intent.VIEW_REPORT_TODAY.value}", title="Laporan Hari Ini"),
]


class OutcomeStatus(str, Enum):
    HANDLED = "handled"
    RATE_LIMITED = "rate_limited"
    DEBOUNCED = "debounced"
    FORBIDDEN = "forbidden"


@dataclass
class EventOutcome:
    status: OutcomeStatus
    replies: list[Reply] = field(default_factory=list)
    retry_after: Optional[int] = None


@dataclass
class _Turn:
    db: Session
    user: User
    event: InboundEvent
    log: LoggerAdapter

    @property
    def user_id(self) -> str:
        return str(self.user.id)


def _handled(*replies: Reply) -> EventOutcome:
    return EventOutcome(status=OutcomeStatus.HANDLED, replies=list(replies))


def _main_menu(prefix: Optional[str] = None) -> Reply:
    text = f"{prefix}\n\n{MSG_MAIN_MENU}" if prefix else MSG_MAIN_MENU
    return Reply(text=text, buttons=list(MAIN_MENU_BUTTONS))


def _type_prompt() -> Reply:
    return Reply(
        text=MSG_CHOOSE_TYPE,
        buttons=[
            ReplyButton(id=BUTTON_TYPE_INCOME, title=TYPE_LABELS[TransactionType.INCOME]),
            ReplyButton(id=BUTTON_TYPE_EXPENSE, title=TYPE_LABELS[TransactionType.EXPENSE]),
            ReplyButton(id=BUTTON_CANCEL, title="Batal"),
        ],
    )


def _amount_prompt() -> Reply:
    return Reply(text=MSG_ENTER_AMOUNT, buttons=[ReplyButton(id=BUTTON_BACK, title="Kembali")])


def _description_prompt() -> Reply:
    return Reply(
        text=MSG_ENTER_DESCRIPTION,
        buttons=[
            ReplyButton(id=BUTTON_SKIP_DESCRIPTION, title="Lewati"),
            ReplyButton(id=BUTTON_BACK, title="Kembali"),
        ],
    )


def _type_label(transaction_type) -> str:
    if transaction_type is None:
        return "-"
    return TYPE_LABELS[TransactionType(transaction_type)]


def _fields_summary(fields: TransactionFields) -> str:
    amount = transaction_service.format_currency(fields.amount) if fields.amount is not None else "-"
    return f"{_type_label(fields.transaction_type)}, {fields.category or '-'}, {amount}"


def _confirmation(fields: TransactionFields, prefix: Optional[str] = None) -> Reply:
    text = MSG_CONFIRM.format(
        type=_type_label(fields.transaction_type),
        category=fields.category or "-",
        amount=transaction_service.format_currency(fields.amount) if fields.amount is not None else "-",
        description=fields.description or "-",
    )
    if prefix:
        text = f"{prefix}\n\n{text}"
    return Reply(
        text=text,
        buttons=[
            ReplyButton(id=BUTTON_CONFIRM, title="Simpan"),
            ReplyButton(id=f"{BUTTON_EDIT_PREFIX}{EditableField.AMOUNT.value}", title="Ubah Jumlah"),
            ReplyButton(id=f"{BUTTON_EDIT_PREFIX}{EditableField.CATEGORY.value}", title="Ubah Kategori"),
            ReplyButton(id=f"{BUTTON_EDIT_PREFIX}{EditableField.DESCRIPTION.value}", title="Ubah Keterangan"),
            ReplyButton(id=BUTTON_CANCEL, title="Batal"),
        ],
    )


class InteractionOrchestrator:
    def __init__(
        self,
        *,
        sessions: SessionStore,
        rate_limiter: RateLimiter,
        debounce: DebounceGuard,
        interpreter: CommandInterpreter,
        messenger: MessagingClient,
        max_retries: int = MAX_RETRIES,
    ):
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.debounce = debounce
        self.interpreter = interpreter
        self.messenger = messenger
        self.max_retries = max_retries

    async def handle_event(self, db: Session, event: InboundEvent, user: User) -> EventOutcome:
        turn = _Turn(
            db=db,
            user=user,
            event=event,
            log=LoggerAdapter(logger, {"conversation_id": event.conversation_id, "user_id": str(user.id)}),
        )

        decision = await self.rate_limiter.check_and_consume(event.conversation_id)
        if not decision.allowed:
            outcome = EventOutcome(status=OutcomeStatus.RATE_LIMITED, retry_after=decision.retry_after)
            # One wait notice per window; the rest of a flood is dropped silently.
            if await self.rate_limiter.claim_notice(event.conversation_id, decision):
                outcome.replies.append(Reply(text=MSG_RATE_LIMITED.format(seconds=decision.retry_after)))
            await self._send(turn, outcome)
            return outcome

        if event.is_button and await self.debounce.should_suppress(turn.user_id, event.button_id):
            turn.log.info("Duplicate button click dropped", context={"button_id": event.button_id})
            return EventOutcome(status=OutcomeStatus.DEBOUNCED)

        try:
            if event.is_button:
                outcome = await self._handle_button(turn, event.button_id)
            else:
                outcome = await self._handle_text(turn, event.text or "")
        except StoreUnavailableError as e:
            turn.log.error("Session store unavailable while handling event", context={"error": str(e)})
            outcome = _handled(Reply(text=MSG_TEMPORARY_ERROR))
        except UsageError as e:
            turn.log.warning("Session precondition not met", context={"error": e.message})
            await self.sessions.clear(turn.user_id)
            outcome = _handled(_main_menu())

        await self._send(turn, outcome)
        return outcome

    async def _send(self, turn: _Turn, outcome: EventOutcome) -> None:
        for reply in outcome.replies:
            sent = await self.messenger.send(turn.event.conversation_id, reply)
            if not sent:
                turn.log.warning("Reply not delivered", context={"status": outcome.status.value})

    # Text input

    async def _handle_text(self, turn: _Turn, raw_text: str) -> EventOutcome:
        text = raw_text.strip()
        lowered = text.lower()
        session = await self.sessions.get(turn.user_id)

        if lowered in CANCEL_WORDS:
            return await self._cancel(turn, session)

        if session is None or session.menu == MenuStage.MAIN:
            partial = await self.sessions.get_partial_data(turn.user_id)
            if partial:
                return await self._handle_recovery_answer(turn, lowered, partial)

        if session and session.is_editing:
            return await self._apply_edit(turn, session, text)

        if session and session.menu != MenuStage.MAIN:
            return await self._handle_stage_input(turn, session, text)

        return await self._classify(turn, text)

    async def _handle_recovery_answer(self, turn: _Turn, lowered: str, partial) -> EventOutcome:
        if lowered in YES_WORDS:
            return await self._resume(turn)
        if lowered in NO_WORDS:
            await self.sessions.clear_partial_data(turn.user_id)
            return _handled(_main_menu(MSG_RECOVERY_DISCARDED))
        return _handled(Reply(text=MSG_RECOVERY_OFFER.format(summary=_fields_summary(partial))))

    async def _resume(self, turn: _Turn) -> EventOutcome:
        restored = await self.sessions.restore_from_partial_data(turn.user_id)
        stage = resume_stage(restored.transaction_fields())
        session = await self.sessions.update(turn.user_id, menu=stage, step=step_of(stage))
        await self.sessions.clear_partial_data(turn.user_id)
        turn.log.info("Resumed interrupted transaction", context={"stage": stage.value})
        return _handled(await self._prompt_for_stage(turn, session))

    async def _handle_stage_input(self, turn: _Turn, session: SessionState, text: str) -> EventOutcome:
        if session.menu == MenuStage.TRANSACTION_TYPE:
            transaction_type = self._parse_type(text)
            if transaction_type is None:
                return _handled(_type_prompt())
            return await self._choose_type(turn, transaction_type)

        if session.menu == MenuStage.CATEGORY_SELECTION:
            return await self._choose_category(turn, session, text)

        if session.menu == MenuStage.AMOUNT_INPUT:
            result = transaction_service.parse_amount(text)
            if not result.ok:
                return _handled(Reply(text=MSG_INVALID_AMOUNT, buttons=[ReplyButton(id=BUTTON_BACK, title="Kembali")]))
            await self._move(turn, session, advance(session.menu), amount=result.value)
            return _handled(_description_prompt())

        if session.menu == MenuStage.DESCRIPTION_INPUT:
            description = None if text.lower() in SKIP_WORDS else text
            updated = await self._move(turn, session, advance(session.menu), description=description)
            return _handled(_confirmation(updated))

        if session.menu == MenuStage.CONFIRMATION:
            if text.lower() in YES_WORDS:
                return await self._commit(turn, session)
            return _handled(_confirmation(session))

        return await self._classify(turn, text)

    @staticmethod
    def _parse_type(text: str) -> Optional[TransactionType]:
        lowered = text.strip().lower()
        if lowered in {"1", "penjualan", "pemasukan", "income"}:
            return TransactionType.INCOME
        if lowered in {"2", "pengeluaran", "expense"}:
            return TransactionType.EXPENSE
        return None

    # Recognition

    async def _classify(self, turn: _Turn, text: str) -> EventOutcome:
        parsed = self.interpreter.classify(text, user_id=turn.user_id, role_hint=turn.user.role)
        if parsed is None:
            suggestions = self.interpreter.suggest(text)
            if not suggestions:
                return _handled(Reply(text=f"{MSG_NOT_RECOGNIZED}\n\n{MSG_HELP}"))
            return _handled(
                Reply(
                    text=f"{MSG_NOT_RECOGNIZED} {MSG_SUGGESTIONS}",
                    buttons=[
                        ReplyButton(id=f"{BUTTON_COMMAND_PREFIX}{s.intent.value}", title=s.description)
                        for s in suggestions
                    ],
                )
            )

        turn.log.info(
            "Command recognized",
            context={
                "intent": parsed.recognized_intent.value,
                "confidence": round(parsed.confidence, 3),
                "alias": parsed.matched_alias,
            },
        )

        if not self.interpreter.should_auto_execute(parsed.confidence):
            buttons = [
                ReplyButton(
                    id=f"{BUTTON_COMMAND_PREFIX}{parsed.recognized_intent.value}",
                    title=describe(parsed.recognized_intent),
                )
            ]
            for suggestion in self.interpreter.suggest(text):
                if suggestion.intent != parsed.recognized_intent:
                    buttons.append(
                        ReplyButton(id=f"{BUTTON_COMMAND_PREFIX}{suggestion.intent.value}", title=suggestion.description)
                    )
            return _handled(
                Reply(text=MSG_CONFIRM_COMMAND.format(description=describe(parsed.recognized_intent)), buttons=buttons)
            )

        return await self._execute_intent(turn, parsed.recognized_intent)

    async def _execute_intent(self, turn: _Turn, intent: Intent) -> EventOutcome:
        if not is_intent_allowed(intent, turn.user.role):
            turn.log.warning("Intent not allowed for role", context={"intent": intent.value, "role": turn.user.role})
            return EventOutcome(
                status=OutcomeStatus.FORBIDDEN,
                replies=[Reply(text=MSG_FORBIDDEN.format(description=describe(intent)))],
            )

        if intent == Intent.RECORD_SALE:
            return await self._choose_type(turn, TransactionType.INCOME)
        if intent == Intent.RECORD_EXPENSE:
            return await self._choose_type(turn, TransactionType.EXPENSE)
        if intent in REPORT_PERIODS:
            return _handled(self._report(turn, intent))
        if intent in (Intent.VIEW_BALANCE, Intent.CHECK_BALANCE):
            return _handled(self._balance(turn))
        if intent == Intent.HELP:
            return _handled(Reply(text=MSG_HELP, buttons=[ReplyButton(id=BUTTON_MENU_MAIN, title="Menu")]))

        await self.sessions.set(turn.user_id, SessionState(menu=MenuStage.MAIN))
        return _handled(_main_menu())

    def _summary_scope(self, turn: _Turn):
        return None if turn.user.role in transaction_service.ORG_WIDE_ROLES else turn.user.id

    def _report(self, turn: _Turn, intent: Intent) -> Reply:
        period, label = REPORT_PERIODS[intent]
        start, end = transaction_service.period_range(period)
        summary = transaction_service.get_summary(turn.db, start, end, user_id=self._summary_scope(turn))
        return Reply(
            text=MSG_REPORT.format(
                period=label,
                income=transaction_service.format_currency(summary.income),
                expense=transaction_service.format_currency(summary.expense),
                net=transaction_service.format_currency(summary.net),
                count=summary.count,
            )
        )

    def _balance(self, turn: _Turn) -> Reply:
        summary = transaction_service.get_summary(turn.db, user_id=self._summary_scope(turn))
        return Reply(
            text=MSG_BALANCE.format(
                net=transaction_service.format_currency(summary.net),
                income=transaction_service.format_currency(summary.income),
                expense=transaction_service.format_currency(summary.expense),
            )
        )

    # Workflow steps

    async def _move(self, turn: _Turn, session: SessionState, stage: MenuStage, **fields) -> SessionState:
        transition(session.menu, stage)
        return await self.sessions.update(turn.user_id, menu=stage, step=step_of(stage), **fields)

    async def _choose_type(self, turn: _Turn, transaction_type: TransactionType) -> EventOutcome:
        if not is_intent_allowed(TYPE_INTENTS[transaction_type], turn.user.role):
            return await self._execute_intent(turn, TYPE_INTENTS[transaction_type])

        # Starting a new entry discards whatever was half-filled before.
        stage = transition(MenuStage.MAIN, MenuStage.TRANSACTION_TYPE)
        session = await self.sessions.set(
            turn.user_id,
            SessionState(menu=stage, step=step_of(stage), transaction_type=transaction_type),
        )
        session = await self._move(turn, session, advance(stage))
        return _handled(self._category_prompt(turn, session))

    def _category_prompt(self, turn: _Turn, session: SessionState, prefix: Optional[str] = None) -> Reply:
        label = _type_label(session.transaction_type).lower()
        categories = transaction_service.list_categories(turn.db, session.transaction_type)
        if not categories:
            return Reply(text=MSG_NO_CATEGORIES.format(label=label), buttons=[ReplyButton(id=BUTTON_MENU_MAIN, title="Menu")])

        options = "\n".join(f"{i}. {category.name}" for i, category in enumerate(categories, start=1))
        text = MSG_CHOOSE_CATEGORY.format(label=label, options=options)
        if prefix:
            text = f"{prefix}\n{text}"
        return Reply(
            text=text,
            buttons=[
                ReplyButton(id=f"{BUTTON_CATEGORY_PREFIX}{category.name}", title=category.name)
                for category in categories
            ],
        )

    async def _choose_category(self, turn: _Turn, session: SessionState, text: str) -> EventOutcome:
        category = transaction_service.find_category(turn.db, session.transaction_type, text)
        if category is None:
            return _handled(self._category_prompt(turn, session, prefix=MSG_UNKNOWN_CATEGORY))

        if session.editing_field == EditableField.CATEGORY:
            await self.sessions.update(turn.user_id, category=category.name)
            updated = await self.sessions.finish_editing(turn.user_id)
            return _handled(_confirmation(updated))

        await self._move(turn, session, advance(session.menu), category=category.name)
        return _handled(_amount_prompt())

    async def _apply_edit(self, turn: _Turn, session: SessionState, text: str) -> EventOutcome:
        if session.editing_field == EditableField.CATEGORY:
            return await self._choose_category(turn, session, text)

        if session.editing_field == EditableField.AMOUNT:
            result = transaction_service.parse_amount(text)
            if not result.ok:
                return _handled(Reply(text=MSG_INVALID_AMOUNT))
            await self.sessions.update(turn.user_id, amount=result.value)
        else:
            description = None if text.lower() in SKIP_WORDS else text
            await self.sessions.update(turn.user_id, description=description)

        updated = await self.sessions.finish_editing(turn.user_id)
        return _handled(_confirmation(updated))

    async def _start_edit(self, turn: _Turn, field_name: str) -> EventOutcome:
        session = await self.sessions.get(turn.user_id)
        if not session or session.menu != MenuStage.CONFIRMATION:
            return _handled(Reply(text=MSG_UNKNOWN_BUTTON), _main_menu())

        try:
            editable = EditableField(field_name)
        except ValueError:
            return _handled(Reply(text=MSG_UNKNOWN_BUTTON))

        session = await self.sessions.start_editing(turn.user_id, editable)
        if editable == EditableField.CATEGORY:
            return _handled(self._category_prompt(turn, session))
        if editable == EditableField.AMOUNT:
            return _handled(_amount_prompt())
        return _handled(_description_prompt())

    async def _prompt_for_stage(self, turn: _Turn, session: SessionState) -> Reply:
        if session.menu == MenuStage.TRANSACTION_TYPE:
            return _type_prompt()
        if session.menu == MenuStage.CATEGORY_SELECTION:
            return self._category_prompt(turn, session)
        if session.menu == MenuStage.AMOUNT_INPUT:
            return _amount_prompt()
        if session.menu == MenuStage.DESCRIPTION_INPUT:
            return _description_prompt()
        if session.menu == MenuStage.CONFIRMATION:
            return _confirmation(session)
        return _main_menu()

    async def _cancel(self, turn: _Turn, session: Optional[SessionState]) -> EventOutcome:
        if session and session.is_editing:
            restored = await self.sessions.cancel_editing(turn.user_id)
            return _handled(_confirmation(restored, prefix=MSG_EDIT_CANCELLED))

        await self.sessions.clear(turn.user_id)
        await self.sessions.clear_partial_data(turn.user_id)
        return _handled(_main_menu(MSG_CANCELLED))

    async def _back(self, turn: _Turn) -> EventOutcome:
        session = await self.sessions.get(turn.user_id)
        if session is None:
            return _handled(_main_menu())

        if session.is_editing:
            restored = await self.sessions.cancel_editing(turn.user_id)
            return _handled(_confirmation(restored))

        try:
            stage = go_back(session.menu)
        except InvalidTransitionError:
            return _handled(_main_menu())

        if stage in (MenuStage.MAIN, MenuStage.TRANSACTION_TYPE):
            await self.sessions.set(turn.user_id, SessionState(menu=MenuStage.MAIN))
            return _handled(_main_menu())

        session = await self._move(turn, session, stage)
        return _handled(await self._prompt_for_stage(turn, session))

    # Persistence and recovery

    async def _commit(self, turn: _Turn, session: SessionState) -> EventOutcome:
        fields = TransactionFields(**session.transaction_fields())
        result = transaction_service.record_transaction(turn.db, turn.user.id, fields)
        if result.ok:
            return await self._saved(turn, fields)

        if result.error_code == ErrorCode.USAGE_ERROR.value:
            stage = resume_stage(fields.transaction_fields())
            updated = await self.sessions.update(turn.user_id, menu=stage, step=step_of(stage))
            return _handled(await self._prompt_for_stage(turn, updated))

        # A confirmation repeated after a failed save counts against the same retry budget as error_retry.
        previous = await self.sessions.get_partial_data(turn.user_id)
        retry_count = previous.retry_count + 1 if previous else 0
        if retry_count >= self.max_retries:
            return await self._abandon(turn, retry_count)

        turn.log.warning(
            "Transaction commit failed, saving partial data",
            context={"error": result.error, "retry_count": retry_count},
        )
        await self.sessions.save_partial_data(turn.user_id, retry_count=retry_count, **fields.transaction_fields())
        return _handled(self._retry_prompt())

    async def _abandon(self, turn: _Turn, retry_count: int) -> EventOutcome:
        turn.log.error("Abandoning transaction after retries", context={"retry_count": retry_count})
        await self.sessions.clear_partial_data(turn.user_id)
        await self.sessions.clear(turn.user_id)
        return _handled(_main_menu(MSG_RETRY_ABANDONED.format(retries=retry_count)))

    async def _saved(self, turn: _Turn, fields: TransactionFields) -> EventOutcome:
        await self.sessions.clear(turn.user_id)
        await self.sessions.clear_partial_data(turn.user_id)
        text = MSG_SAVED.format(
            type=_type_label(fields.transaction_type),
            amount=transaction_service.format_currency(fields.amount),
            category=fields.category,
        )
        return _handled(_main_menu(text))

    @staticmethod
    def _retry_prompt() -> Reply:
        return Reply(
            text=MSG_SAVE_FAILED,
            buttons=[
                ReplyButton(id=BUTTON_RETRY, title="Coba Lagi"),
                ReplyButton(id=BUTTON_CANCEL, title="Batal"),
            ],
        )

    async def _retry(self, turn: _Turn) -> EventOutcome:
        if not await self.sessions.has_recoverable_context(turn.user_id):
            return _handled(_main_menu(MSG_NOTHING_TO_RETRY))

        retry_count = await self.sessions.increment_retry_count(turn.user_id)
        session = await self.sessions.restore_from_partial_data(turn.user_id)
        fields = TransactionFields(**session.transaction_fields())

        result = transaction_service.record_transaction(turn.db, turn.user.id, fields)
        if result.ok:
            turn.log.info("Transaction saved on retry", context={"retry_count": retry_count})
            return await self._saved(turn, fields)

        if result.error_code == ErrorCode.USAGE_ERROR.value:
            await self.sessions.clear_partial_data(turn.user_id)
            stage = resume_stage(fields.transaction_fields())
            updated = await self.sessions.update(turn.user_id, menu=stage, step=step_of(stage))
            return _handled(await self._prompt_for_stage(turn, updated))

        if retry_count >= self.max_retries:
            return await self._abandon(turn, retry_count)

        turn.log.warning("Retry failed", context={"retry_count": retry_count, "error": result.error})
        return _handled(self._retry_prompt())

    # Buttons

    async def _handle_button(self, turn: _Turn, button_id: str) -> EventOutcome:
        if button_id == BUTTON_MENU_MAIN:
            await self.sessions.set(turn.user_id, SessionState(menu=MenuStage.MAIN))
            return _handled(_main_menu())

        if button_id == BUTTON_TYPE_INCOME:
            return await self._choose_type(turn, TransactionType.INCOME)
        if button_id == BUTTON_TYPE_EXPENSE:
            return await self._choose_type(turn, TransactionType.EXPENSE)

        if button_id == BUTTON_CONFIRM:
            session = await self.sessions.get(turn.user_id)
            if not session or session.menu != MenuStage.CONFIRMATION or session.is_editing:
                return _handled(Reply(text=MSG_UNKNOWN_BUTTON), _main_menu())
            return await self._commit(turn, session)

        if button_id == BUTTON_SKIP_DESCRIPTION:
            session = await self.sessions.get(turn.user_id)
            if session and session.editing_field == EditableField.DESCRIPTION:
                return await self._apply_edit(turn, session, "-")
            if session and session.menu == MenuStage.DESCRIPTION_INPUT:
                return await self._handle_stage_input(turn, session, "-")
            return _handled(Reply(text=MSG_UNKNOWN_BUTTON))

        if button_id == BUTTON_CANCEL:
            return await self._cancel(turn, await self.sessions.get(turn.user_id))
        if button_id == BUTTON_BACK:
            return await self._back(turn)
        if button_id == BUTTON_RETRY:
            return await self._retry(turn)

        if button_id.startswith(BUTTON_EDIT_PREFIX):
            return await self._start_edit(turn, button_id[len(BUTTON_EDIT_PREFIX):])

        if button_id.startswith(BUTTON_CATEGORY_PREFIX):
            session = await self.sessions.get(turn.user_id)
            if not session or (
                session.menu != MenuStage.CATEGORY_SELECTION and session.editing_field != EditableField.CATEGORY
            ):
                return _handled(Reply(text=MSG_UNKNOWN_BUTTON))
            return await self._choose_category(turn, session, button_id[len(BUTTON_CATEGORY_PREFIX):])

        if button_id.startswith(BUTTON_COMMAND_PREFIX):
            try:
                intent = Intent(button_id[len(BUTTON_COMMAND_PREFIX):])
            except ValueError:
                return _handled(Reply(text=MSG_UNKNOWN_BUTTON))
            return await self._execute_intent(turn, intent)

        turn.log.warning("Unknown button", context={"button_id": button_id})
        return _handled(Reply(text=MSG_UNKNOWN_BUTTON))
