"""Branch-on-edit for the message tree, and branch discovery over parent pointers."""

from __future__ import annotations

import logging

from .errors import InvalidArgument
from .models import BranchGroup, EditResult, Message
from .storage import ConversationStore

logger = logging.getLogger(__name__)


class BranchManager:
    """Decides whether an edit rewrites a message or forks the thread beside it.

    Branches are never stored. A branch group is every set of messages sharing
    one ``parent_message_id``; the groups are recomputed on each read.
    """

    def __init__(self, store: ConversationStore):
        self.store = store

    def edit_message(self, message_id: int, new_content: str) -> EditResult:
        """Edit a message, branching when it already has replies.

        A leaf is rewritten in place. A message with descendants is left alone
        together with its whole subtree; the new content becomes a sibling with
        the same parent and role. Regenerating a reply to a branched user
        message is up to the caller.
        """
        if not new_content or not new_content.strip():
            raise InvalidArgument("Message content must not be empty")

        target = self.store.get(message_id)
        with self.store.conversation_lock(target.conversation_id):
            if not self.store.has_children(message_id):
                mutated = self.store.replace_leaf(message_id, new_content)
                logger.debug("Edited leaf message %d in place", message_id)
                return EditResult(branched=False, message=mutated)

            sibling = self.store.append(
                target.conversation_id,
                target.role,
                new_content,
                parent_id=target.parent_message_id,
            )

        logger.info(
            "Branched message %d into %d (parent %s)",
            message_id, sibling.id, target.parent_message_id,
        )
        return EditResult(branched=True, message=sibling, prior_id=target.id)

    def branches_for(self, conversation_id: int) -> list[BranchGroup]:
        """Return every point of divergence, siblings in creation order."""
        groups: dict[int | None, list[Message]] = {}
        for msg in self.store.list_by_conversation(conversation_id):
            groups.setdefault(msg.parent_message_id, []).append(msg)

        return [
            BranchGroup(parent_id=parent_id, siblings=siblings)
            for parent_id, siblings in groups.items()
            if len(siblings) > 1
        ]

    def active_path(self, conversation_id: int, leaf_id: int | None = None) -> list[Message]:
        """Root-to-leaf display path; defaults to the most recently created message."""
        if leaf_id is None:
            latest = self.store.latest_message(conversation_id)
            if latest is None:
                self.store.get_conversation(conversation_id)
                return []
            leaf_id = latest.id
        else:
            leaf = self.store.get(leaf_id)
            if leaf.conversation_id != conversation_id:
                raise InvalidArgument(
                    f"Message {leaf_id} is not part of conversation {conversation_id}"
                )
        return self.store.ancestors(leaf_id)
