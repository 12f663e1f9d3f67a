"""Scripted buyer-verification dialogue.

The script is a fixed list of N steps. ``chat_step`` is 0 before the first
prompt, k while waiting for the answer to step k, and stays N once payment
instructions are sent. :meth:`ConversationScript.decide` is a pure function
of ``(step, message)``; :class:`ConversationService` applies its result
(send, then persist, then mark the message processed).
"""
import re
from dataclasses import dataclass
from enum import Enum
from itertools import groupby
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .account_pool import AccountPool
from .errors import P2PError
from .events import ConversationAdvanced, EventBus, PaymentInstructionsSent, TransactionBlacklisted
from .logging_setup import logger
from .models import ChatMessage, Transaction, TransactionStatus
from .persistence_sqlite import SQLiteStore


class FailurePolicy(str, Enum):
    REPEAT = "repeat"
    BLACKLIST = "blacklist"


@dataclass(frozen=True)
class ChatStep:
    prompt: str
    accepted: Tuple[str, ...]
    policy: FailurePolicy = FailurePolicy.BLACKLIST


DEFAULT_STEPS: Tuple[ChatStep, ...] = (
    ChatStep(
        prompt="Здравствуйте!\nОплата будет с Т банка?\n( просто напишите да/нет)",
        accepted=("да", "yes", "ок", "ok", "норм", "хорошо", "конечно", "разумеется"),
    ),
    ChatStep(
        prompt="Чек в формате пдф с официальной почты Т банка сможете отправить ?\n( просто напишите да/нет)",
        accepted=("да", "yes", "ок", "ok", "норм", "хорошо", "конечно", "разумеется", "смогу", "могу"),
    ),
    ChatStep(
        prompt="При СБП, если оплата будет на неверный банк, деньги потеряны.\n( просто напишите подтверждаю/ не подтверждаю)",
        accepted=("подтверждаю", "подтвержаю", "да", "yes", "ок", "ok", "понял", "понятно", "ясно"),
    ),
)

DEFAULT_NEGATIVE_ANSWERS: Tuple[str, ...] = ("нет", "no", "не", "не подтверждаю", "отказываюсь")

APOLOGY = "К сожалению, мы не можем продолжить эту сделку. Удачи!"

PAYMENT_TEMPLATE = (
    "Реквизиты для оплаты:\n"
    "Банк: {bank}\n"
    "{wallet_label}: {wallet}\n"
    "Сумма: {amount} {fiat}\n"
    "Email для чека: {email}\n"
    "\n"
    "После оплаты отправьте чек в формате PDF на указанный email."
)

CONVERSATION_STATUSES = frozenset({TransactionStatus.CHAT_STARTED, TransactionStatus.PAYMENT_RECEIVED})


class Action(str, Enum):
    SEND_PROMPT = "send_prompt"
    REPEAT_PROMPT = "repeat_prompt"
    SEND_PAYMENT_DETAILS = "send_payment_details"
    BLACKLIST = "blacklist"


@dataclass(frozen=True)
class Transition:
    action: Action
    next_step: int
    reply: Optional[str] = None
    status: Optional[TransactionStatus] = None


class ConversationScript:
    def __init__(self, steps: Sequence[ChatStep] = DEFAULT_STEPS, negative_answers: Iterable[str] = DEFAULT_NEGATIVE_ANSWERS, apology: str = APOLOGY):
        if not steps:
            raise ValueError("A conversation script needs at least one step")
        self.steps = tuple(steps)
        self.negative_answers = tuple(a.strip().lower() for a in negative_answers)
        self.apology = apology
        # whole words/phrases only, so "не" does not match inside "конечно"
        self._negative_re = re.compile(
            "|".join(rf"(?<!\w){re.escape(a)}(?!\w)" for a in sorted(self.negative_answers, key=len, reverse=True))
        ) if self.negative_answers else None

    @classmethod
    def from_config(cls, steps: List[Dict[str, Any]], negative_answers: List[str]) -> "ConversationScript":
        built = [
            ChatStep(
                prompt=s["prompt"],
                accepted=tuple(s.get("accepted", ())),
                policy=FailurePolicy(s.get("policy", FailurePolicy.BLACKLIST.value)),
            )
            for s in steps
        ]
        return cls(built or DEFAULT_STEPS, negative_answers or DEFAULT_NEGATIVE_ANSWERS)

    def __len__(self) -> int:
        return len(self.steps)

    @staticmethod
    def normalize(text: str) -> str:
        return text.strip().lower()

    def is_negative(self, text: str) -> bool:
        return self._negative_re is not None and self._negative_re.search(self.normalize(text)) is not None

    def is_accepted(self, step: int, text: str) -> bool:
        """Negative answers fail first; otherwise any accepted substring passes."""
        if self.is_negative(text):
            return False
        normalized = self.normalize(text)
        return any(answer.lower() in normalized for answer in self.steps[step - 1].accepted)

    def decide(self, step: int, text: str) -> Transition:
        n = len(self.steps)
        if step == 0:
            return Transition(Action.SEND_PROMPT, 1, self.steps[0].prompt)
        if not 1 <= step <= n:
            raise ValueError(f"Chat step {step} outside script of {n} steps")

        if self.is_accepted(step, text):
            if step < n:
                return Transition(Action.SEND_PROMPT, step + 1, self.steps[step].prompt)
            return Transition(Action.SEND_PAYMENT_DETAILS, n, status=TransactionStatus.AWAITING_PAYMENT)

        current = self.steps[step - 1]
        if current.policy == FailurePolicy.BLACKLIST:
            return Transition(Action.BLACKLIST, step, self.apology, TransactionStatus.BLACKLISTED)
        return Transition(Action.REPEAT_PROMPT, step, current.prompt)


class ConversationService:
    def __init__(
        self,
        store: SQLiteStore,
        pool: AccountPool,
        script: Optional[ConversationScript] = None,
        *,
        events: Optional[EventBus] = None,
        payment_template: Optional[str] = None,
        receipt_email: str = "",
    ):
        self.store = store
        self.pool = pool
        self.script = script or ConversationScript()
        self.events = events
        self.payment_template = payment_template or PAYMENT_TEMPLATE
        self.receipt_email = receipt_email

    async def _send(self, tx: Transaction, text: str) -> None:
        ad = self.store.get_advertisement(tx.advertisement_id)
        await self.pool.client(ad.account_id).send_message(tx.order_id, text)

    async def start_pending_conversations(self) -> int:
        """Send step 1 to linked transactions that have not been greeted yet."""
        started = 0
        for tx in self.store.list_active_transactions_with_order():
            if tx.status not in CONVERSATION_STATUSES or tx.chat_step != 0:
                continue
            try:
                await self._send(tx, self.script.steps[0].prompt)
            except P2PError as e:
                logger.warning(f"Conversation start failed | transaction_id={tx.id} error={e}")
                continue
            self.store.update_transaction(tx.id, chat_step=1)
            # anything the buyer wrote before the first question is not an answer
            self.store.mark_transaction_messages_processed(tx.id)
            started += 1
            logger.info(f"Conversation started | transaction_id={tx.id} order_id={tx.order_id}")
            await self._advanced(tx.id, 0, 1)
        return started

    async def process_pending_messages(self) -> int:
        """Feed unprocessed counterparty messages through the script, oldest first."""
        handled = 0
        messages = self.store.list_unprocessed_counterparty_messages()
        for transaction_id, group in groupby(messages, key=lambda m: m.transaction_id):
            for msg in group:
                tx = self.store.get_transaction(transaction_id)
                try:
                    transition = await self.handle_message(tx, msg)
                except P2PError as e:
                    # leave unprocessed; the next tick retries in order
                    logger.warning(f"Conversation step deferred | transaction_id={tx.id} error={e}")
                    break
                except Exception as e:
                    logger.exception(f"Conversation failed | transaction_id={tx.id} error={e}")
                    self.store.update_transaction(tx.id, status=TransactionStatus.FAILED, failure_reason=f"conversation error: {e}")
                    self.store.mark_message_processed(msg.id)
                    break
                handled += 1
                if transition is not None and transition.next_step == 1 and tx.chat_step == 0:
                    break
        return handled

    async def handle_message(self, tx: Transaction, msg: ChatMessage) -> Optional[Transition]:
        if tx.status not in CONVERSATION_STATUSES:
            self.store.mark_message_processed(msg.id)
            return None

        transition = self.script.decide(tx.chat_step, msg.content)
        if transition.action == Action.SEND_PAYMENT_DETAILS:
            await self._send_payment_details(tx)
        else:
            await self._send(tx, transition.reply)

        self.store.update_transaction(
            tx.id,
            chat_step=transition.next_step,
            status=transition.status,
            failure_reason=f"rejected answer at step {tx.chat_step}: {msg.content[:200]}" if transition.action == Action.BLACKLIST else None,
        )
        if transition.action == Action.BLACKLIST:
            await self._blacklist(tx)
        if tx.chat_step == 0:
            self.store.mark_transaction_messages_processed(tx.id)
        else:
            self.store.mark_message_processed(msg.id)

        logger.info(
            f"Conversation transition | transaction_id={tx.id} action={transition.action.value} "
            f"step={tx.chat_step}->{transition.next_step}"
        )
        if transition.next_step != tx.chat_step:
            await self._advanced(tx.id, tx.chat_step, transition.next_step)
        return transition

    def render_payment_details(self, tx: Transaction) -> Optional[str]:
        payout = self.store.get_payout(tx.payout_id) if tx.payout_id is not None else None
        if payout is None:
            return None
        ad = self.store.get_advertisement(tx.advertisement_id)
        return self.payment_template.format(
            bank=payout.bank or ad.payment_method,
            wallet_label="Телефон" if ad.payment_method.upper() == "SBP" else "Карта",
            wallet=payout.wallet,
            amount=payout.amount,
            fiat=ad.fiat,
            email=self.receipt_email,
        )

    async def _send_payment_details(self, tx: Transaction) -> None:
        details = self.render_payment_details(tx)
        if details is None:
            logger.warning(f"No payout behind transaction, payment details need an operator | transaction_id={tx.id}")
            self.store.update_transaction(tx.id, needs_review=True)
            return
        await self._send(tx, details)
        if self.events is not None:
            await self.events.publish(PaymentInstructionsSent(transaction_id=tx.id))

    async def _blacklist(self, tx: Transaction) -> None:
        payout = self.store.get_payout(tx.payout_id) if tx.payout_id is not None else None
        reason = f"failed verification at step {tx.chat_step}"
        if payout is not None:
            self.store.add_to_blacklist(payout.wallet, reason, payout_id=payout.id)
        logger.warning(f"Transaction blacklisted | transaction_id={tx.id} order_id={tx.order_id} reason={reason}")
        if self.events is not None:
            await self.events.publish(TransactionBlacklisted(transaction_id=tx.id, wallet=payout.wallet if payout else None, reason=reason))

    async def _advanced(self, transaction_id: int, from_step: int, to_step: int) -> None:
        if self.events is not None:
            await self.events.publish(ConversationAdvanced(transaction_id=transaction_id, from_step=from_step, to_step=to_step))
