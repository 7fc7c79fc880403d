"""
FAQ flow — category browsing and free-text questions against the knowledge base.

Stages:
    category_selection   number → list that category's questions; text → answer
    waiting_question     number → listed question; text → answer
    feedback             "útil?" 1 sim / 2 não
    follow_up            after "não": 1 reformular, 2 atendente, 3 outra pergunta
    no_answer_follow_up  nothing matched: 1 reformular, 2 mais frequentes, 3 atendente
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from flows.base import BaseFlow, FlowResult, is_no, is_yes, menu_choice
from flows.knowledge import FaqEntry, KnowledgeBase, Match
from models.schemas import FlowName, Session

logger = structlog.get_logger()

HISTORY_SIZE = 3

USEFUL_PROMPT = "Esta resposta foi útil?\n\n1️⃣ Sim\n2️⃣ Não"

NEGATIVE_OPTIONS = (
    "Lamento que a resposta não tenha ajudado. Você gostaria de:\n\n"
    "1️⃣ Reformular sua pergunta\n"
    "2️⃣ Falar com um atendente\n"
    "3️⃣ Fazer outra pergunta"
)

NO_ANSWER_OPTIONS = (
    "Desculpe, não encontrei uma resposta específica para sua pergunta. Você gostaria de:\n\n"
    "1️⃣ Reformular sua pergunta\n"
    "2️⃣ Ver as perguntas mais frequentes\n"
    "3️⃣ Falar com um atendente"
)

REPHRASE = "Por favor, reformule sua pergunta com mais detalhes para que eu possa ajudar melhor."


class FaqFlow(BaseFlow):

    name = FlowName.FAQ
    triggers = ("dúvida", "duvida", "dúvidas", "duvidas", "pergunta", "perguntas", "faq",
                "informação", "informacao", "informações", "informacoes", "auxílio", "auxilio")

    class Stage(str, Enum):
        CATEGORY_SELECTION = "category_selection"
        WAITING_QUESTION = "waiting_question"
        FEEDBACK = "feedback"
        FOLLOW_UP = "follow_up"
        NO_ANSWER_FOLLOW_UP = "no_answer_follow_up"

    def stage_handlers(self):
        return {
            self.Stage.CATEGORY_SELECTION: self._category_selection,
            self.Stage.WAITING_QUESTION: self._waiting_question,
            self.Stage.FEEDBACK: self._feedback,
            self.Stage.FOLLOW_UP: self._follow_up,
            self.Stage.NO_ANSWER_FOLLOW_UP: self._no_answer_follow_up,
        }

    @property
    def kb(self) -> KnowledgeBase:
        return self.ctx.knowledge

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        await self.begin(user_id, data={"history": [], "listed": []})
        if "?" in text and self.kb.find_answer(text):
            return await self._answer(user_id, text, [])
        await self.reply(user_id, self._category_menu())
        logger.info("faq_started", user_id=user_id)
        return FlowResult()

    # ── Stages ────────────────────────────────────────────────

    async def _category_selection(self, session: Session, text: str) -> FlowResult:
        choice = menu_choice(text, max(self.kb.categories, default=0))
        if choice is None or choice not in self.kb.categories:
            if len(text) < 3:
                return self.reprompt(self._category_menu())
            return await self._answer(session.user_id, text, session.data.get("history", []))

        category = self.kb.categories[choice]
        entries = self.kb.in_category(choice)
        await self.advance(session.user_id, self.Stage.WAITING_QUESTION, category=choice,
                           listed=[e.id for e in entries])
        await self.reply(
            session.user_id,
            f"Categoria *{category.name}* selecionada. Perguntas frequentes nesta categoria:\n\n"
            f"{self._numbered(entries)}\n\n"
            "Digite o número da pergunta ou escreva sua dúvida.",
        )
        return FlowResult()

    async def _waiting_question(self, session: Session, text: str) -> FlowResult:
        listed = session.data.get("listed", [])
        history = session.data.get("history", [])
        choice = menu_choice(text, len(listed)) if listed else None
        if choice is not None:
            entry = self.kb.get(listed[choice - 1])
            if entry is not None:
                return await self._send_answer(session.user_id, Match(entry.answer, entry), history)

        if not listed and is_no(text):
            await self.finish(session.user_id)
            await self.reply(session.user_id, "Obrigado pelo contato! Se surgir outra dúvida, é só "
                                              "mandar uma mensagem. 😊")
            return FlowResult()
        if len(text) < 3:
            return self.reprompt("Por favor, escreva sua pergunta.")
        return await self._answer(session.user_id, text, history)

    async def _feedback(self, session: Session, text: str) -> FlowResult:
        last = session.data.get("last_question")
        if is_yes(text):
            logger.info("faq_feedback", user_id=session.user_id, entry_id=last, helpful=True)
            await self.advance(session.user_id, self.Stage.WAITING_QUESTION, listed=[])
            await self.reply(session.user_id, "Fico feliz em ajudar! Posso responder mais alguma dúvida?")
            return FlowResult()
        if is_no(text):
            logger.info("faq_feedback", user_id=session.user_id, entry_id=last, helpful=False)
            await self.advance(session.user_id, self.Stage.FOLLOW_UP)
            await self.reply(session.user_id, NEGATIVE_OPTIONS)
            return FlowResult()
        return self.reprompt(USEFUL_PROMPT)

    async def _follow_up(self, session: Session, text: str) -> FlowResult:
        choice = menu_choice(text, 3)
        user_id = session.user_id
        if choice == 1:
            await self.advance(user_id, self.Stage.WAITING_QUESTION, listed=[])
            await self.reply(user_id, REPHRASE)
        elif choice == 2:
            await self.reply(user_id, "Entendido! Estou transferindo você para um atendente humano. "
                                      "Por favor, aguarde um momento.")
            return self.transfer(FlowName.HUMAN_HANDOFF)
        elif choice == 3:
            await self.advance(user_id, self.Stage.WAITING_QUESTION, listed=[])
            await self.reply(user_id, "Certo! Por favor, faça sua nova pergunta.")
        else:
            await self.reply(user_id, "Vou considerar isso como uma nova pergunta.")
            return await self._answer(user_id, text, session.data.get("history", []))
        return FlowResult()

    async def _no_answer_follow_up(self, session: Session, text: str) -> FlowResult:
        choice = menu_choice(text, 3)
        user_id = session.user_id
        if choice == 1:
            await self.advance(user_id, self.Stage.WAITING_QUESTION, listed=[])
            await self.reply(user_id, REPHRASE)
        elif choice == 2:
            entries = self.kb.most_frequent()
            await self.advance(user_id, self.Stage.WAITING_QUESTION, listed=[e.id for e in entries])
            await self.reply(user_id, "Estas são as perguntas mais frequentes:\n\n"
                                      f"{self._numbered(entries)}\n\n"
                                      "Digite o número da pergunta ou escreva sua dúvida.")
        elif choice == 3:
            await self.reply(user_id, "Entendido! Estou transferindo você para um atendente humano. "
                                      "Por favor, aguarde um momento.")
            return self.transfer(FlowName.HUMAN_HANDOFF)
        else:
            return await self._answer(user_id, text, session.data.get("history", []))
        return FlowResult()

    # ── Answers ───────────────────────────────────────────────

    async def _answer(self, user_id: str, question: str, history: list[int]) -> FlowResult:
        match = self.kb.find_answer(question)
        if match is None:
            await self.advance(user_id, self.Stage.NO_ANSWER_FOLLOW_UP, last_question=None)
            await self.reply(user_id, NO_ANSWER_OPTIONS)
            return FlowResult()
        return await self._send_answer(user_id, match, history)

    async def _send_answer(self, user_id: str, match: Match, history: list[int]) -> FlowResult:
        entry: Optional[FaqEntry] = match.entry
        if entry is not None:
            category = self.kb.categories.get(entry.category)
            message = (f"*Pergunta:* {entry.question}\n\n*Resposta:*\n{entry.answer}\n\n"
                       f"*Categoria:* {category.name if category else ''}")
            history = ([entry.id] + [h for h in history if h != entry.id])[:HISTORY_SIZE]
        else:
            message = match.answer

        await self.advance(user_id, self.Stage.FEEDBACK, history=history,
                           last_question=entry.id if entry else None)
        await self.reply(user_id, message)
        await self.reply(user_id, USEFUL_PROMPT)
        logger.info("faq_answered", user_id=user_id, method=match.method,
                    entry_id=entry.id if entry else None, score=match.score)
        return FlowResult()

    # ── Rendering ─────────────────────────────────────────────

    def _category_menu(self) -> str:
        lines = [f"{c.id}️⃣ *{c.name}* - {c.description}" for c in self.kb.categories.values()]
        return ("Para melhor atendê-lo(a), selecione a categoria da sua dúvida:\n\n"
                + "\n".join(lines)
                + "\n\nOu você também pode digitar sua pergunta diretamente.")

    @staticmethod
    def _numbered(entries: list[FaqEntry]) -> str:
        return "\n".join(f"{idx}. {entry.question}" for idx, entry in enumerate(entries, start=1))
