import logging

from sqlalchemy.orm import Session

from chatbot.gemini import GeminiResponder
from chatbot.prompt import build_prompt
from chatbot.storage import (
    SENDER_CHATBOT,
    SENDER_USER,
    get_chat_history,
    get_or_create_phone_number,
    store_message,
)
from chatbot.word_blocks import get_active_blocks

logger = logging.getLogger(__name__)


class ConversationPipeline:
    """
    Turns one inbound message into a chatbot reply.

    Steps: persist the user message, assemble the prompt from the active word
    blocks and the sender's history (which by then includes the new message),
    ask the model, persist the reply. Errors propagate to the caller.
    """

    def __init__(self, history_db: Session, blocks_db: Session, responder: GeminiResponder):
        self.history_db = history_db
        self.blocks_db = blocks_db
        self.responder = responder

    def build_prompt_for(self, sender: str, new_message: str) -> str:
        blocks = get_active_blocks(self.blocks_db)
        history = get_chat_history(self.history_db, sender)
        prompt = build_prompt(blocks, history, new_message)
        logger.debug(
            f"Built prompt from {len(blocks)} blocks and {len(history)} history messages",
            extra={"sender": sender, "prompt_chars": len(prompt)},
        )
        return prompt

    def handle(self, sender: str, text: str) -> str:
        phone_number_id = get_or_create_phone_number(self.history_db, sender)
        store_message(self.history_db, phone_number_id, SENDER_USER, text)
        logger.info("Incoming message stored", extra={"sender": sender})

        prompt = self.build_prompt_for(sender, text)
        reply = self.responder.generate(prompt)

        store_message(self.history_db, phone_number_id, SENDER_CHATBOT, reply)
        logger.info("Chatbot reply stored", extra={"sender": sender})
        return reply
