"""
Repository functions for word blocks, the prompt template fragments.

Active blocks are concatenated in ascending arrangement order to build the
AI prompt (see prompt.py). Two default blocks carry the placeholders and
can be reordered but never edited or removed.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatbot.models import WordBlock
from chatbot.prompt import HISTORY_PLACEHOLDER, NEW_MESSAGE_PLACEHOLDER
from chatbot.storage import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BLOCKS = [
    {"id": "default1", "text": HISTORY_PLACEHOLDER, "arrangement": 0},
    {"id": "default2", "text": NEW_MESSAGE_PLACEHOLDER, "arrangement": 1},
]


class BlockNotFound(Exception):
    """Raised when a word block id does not exist."""


class BlockAlreadyExists(Exception):
    """Raised when creating a word block with an id that is already taken."""


class BlockRuleViolation(Exception):
    """Raised when a change would break a word block invariant."""


def seed_default_blocks(db: Session) -> bool:
    """
    Insert the placeholder blocks if no default block exists yet.

    Returns:
        True if the defaults were inserted, False if they were already present
    """
    existing = db.query(func.count(WordBlock.id)).filter(WordBlock.is_default.is_(True)).scalar()
    if existing:
        return False

    now = to_iso(utc_now())
    for block in DEFAULT_BLOCKS:
        db.add(
            WordBlock(
                id=block["id"],
                text=block["text"],
                is_active=True,
                is_default=True,
                arrangement=block["arrangement"],
                created_at=now,
                updated_at=now,
            )
        )
    db.commit()
    logger.info("Default word blocks inserted")
    return True


def list_blocks(db: Session) -> List[WordBlock]:
    """
    All blocks: active ones by arrangement ASC, then inactive ones newest first.
    """
    active = (
        db.query(WordBlock)
        .filter(WordBlock.is_active.is_(True))
        .order_by(WordBlock.arrangement.asc(), WordBlock.created_at.asc())
        .all()
    )
    inactive = (
        db.query(WordBlock)
        .filter(WordBlock.is_active.is_(False))
        .order_by(WordBlock.created_at.desc())
        .all()
    )
    return active + inactive


def get_active_blocks(db: Session) -> List[WordBlock]:
    """Active blocks in prompt order."""
    return (
        db.query(WordBlock)
        .filter(WordBlock.is_active.is_(True))
        .order_by(WordBlock.arrangement.asc(), WordBlock.created_at.asc())
        .all()
    )


def get_block(db: Session, block_id: str) -> WordBlock:
    block = db.query(WordBlock).filter(WordBlock.id == block_id).first()
    if block is None:
        raise BlockNotFound(block_id)
    return block


def _next_arrangement(db: Session) -> int:
    current = (
        db.query(func.max(WordBlock.arrangement))
        .filter(WordBlock.is_active.is_(True))
        .scalar()
    )
    return 0 if current is None else current + 1


def create_block(
    db: Session,
    block_id: str,
    text: str,
    is_active: bool = False,
    is_default: bool = False,
    arrangement: Optional[int] = None,
) -> WordBlock:
    """
    Create a user block. Active blocks without an arrangement are appended.

    Raises:
        BlockRuleViolation: if asked for a default block, or an arrangement
            for an inactive block
        BlockAlreadyExists: if the id is taken
    """
    if is_default:
        raise BlockRuleViolation("Default blocks cannot be created")
    if not is_active and arrangement is not None:
        raise BlockRuleViolation("Only active blocks can have an arrangement")

    if db.query(WordBlock.id).filter(WordBlock.id == block_id).first() is not None:
        raise BlockAlreadyExists(block_id)

    if is_active and arrangement is None:
        arrangement = _next_arrangement(db)

    now = to_iso(utc_now())
    block = WordBlock(
        id=block_id,
        text=text,
        is_active=is_active,
        is_default=False,
        arrangement=arrangement,
        created_at=now,
        updated_at=now,
    )
    db.add(block)
    try:
        db.commit()
    except IntegrityError:
        # Inserted concurrently by another request
        db.rollback()
        logger.info(f"Duplicate word block id: {block_id}")
        raise BlockAlreadyExists(block_id)

    logger.info(f"Word block created: {block_id}, active={is_active}, arrangement={arrangement}")
    return block


def update_block(db: Session, block_id: str, changes: Dict[str, Any]) -> WordBlock:
    """
    Apply a partial update. Recognised keys: text, is_active, arrangement.

    Deactivating a block clears its arrangement; activating one without an
    explicit arrangement appends it after the current active blocks.
    """
    if not changes:
        raise BlockRuleViolation("No fields to update")

    block = get_block(db, block_id)

    if "text" in changes:
        text = changes["text"]
        if not text:
            raise BlockRuleViolation("Text cannot be empty")
        if block.is_default and text != block.text:
            raise BlockRuleViolation("Cannot modify default blocks")

    is_active = changes.get("is_active", block.is_active)
    if block.is_default and not is_active:
        raise BlockRuleViolation("Cannot deactivate default blocks")

    if is_active:
        arrangement = changes.get("arrangement", block.arrangement)
        if arrangement is None:
            arrangement = _next_arrangement(db)
    else:
        if changes.get("arrangement") is not None:
            raise BlockRuleViolation("Only active blocks can have an arrangement")
        arrangement = None

    if "text" in changes:
        block.text = changes["text"]
    block.is_active = is_active
    block.arrangement = arrangement
    block.updated_at = to_iso(utc_now())

    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to update word block {block_id}: {e}")
        raise

    logger.info(f"Word block updated: {block_id}, fields={sorted(changes)}")
    return block


def update_arrangement(db: Session, block_ids: List[str]) -> None:
    """
    Reorder active blocks: each block's arrangement becomes its list index.
    All updates are committed together or not at all.
    """
    if len(set(block_ids)) != len(block_ids):
        raise BlockRuleViolation("Duplicate block ids in arrangement")

    blocks = {
        block.id: block
        for block in db.query(WordBlock).filter(WordBlock.id.in_(block_ids)).all()
    }
    missing = [block_id for block_id in block_ids if block_id not in blocks]
    if missing:
        raise BlockRuleViolation(f"Unknown block ids: {', '.join(missing)}")
    inactive = [block_id for block_id in block_ids if not blocks[block_id].is_active]
    if inactive:
        raise BlockRuleViolation(f"Only active blocks can be arranged: {', '.join(inactive)}")

    now = to_iso(utc_now())
    try:
        for index, block_id in enumerate(block_ids):
            blocks[block_id].arrangement = index
            blocks[block_id].updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to update arrangement: {e}")
        raise

    logger.info(f"Arrangement updated for {len(block_ids)} blocks")


def delete_block(db: Session, block_id: str) -> None:
    block = get_block(db, block_id)
    if block.is_default:
        raise BlockRuleViolation("Cannot delete default blocks")

    db.delete(block)
    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to delete word block {block_id}: {e}")
        raise
    logger.info(f"Word block deleted: {block_id}")
