"""
convostream - Conversation Store

Durable save/restore of a Conversation.

The file store writes versioned JSON:

    {"version": 1, "conversation": {"id": ..., "model": ..., ...}}

Writes go to a temporary file in the target directory which then
replaces the target, so readers see either the old or the new file.
"""

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Optional

from .errors import PersistenceError
from .logs import get_logger
from .models import Conversation


logger = get_logger(__name__)

STORE_VERSION = 1


class BaseConversationStore(ABC):
    """Interface for saving and loading a conversation."""

    @abstractmethod
    def load(self) -> Optional[Conversation]:
        """Load the stored conversation, or None if there is none."""
        pass

    @abstractmethod
    def save(self, conversation: Conversation) -> None:
        """Replace the stored conversation."""
        pass


class InMemoryConversationStore(BaseConversationStore):
    """Keeps a deep copy of the last saved conversation."""

    def __init__(self):
        self._conversation: Optional[Conversation] = None

    def load(self) -> Optional[Conversation]:
        return copy.deepcopy(self._conversation)

    def save(self, conversation: Conversation) -> None:
        self._conversation = copy.deepcopy(conversation)


class FileConversationStore(BaseConversationStore):
    """
    Stores one conversation as a JSON file.

    Args:
        path: File path
        missing_ok: If True (default), loading a missing file returns
            None. If False, it raises PersistenceError with code
            "not_found".
    """

    def __init__(self, path: str, missing_ok: bool = True):
        self.path = os.fspath(path)
        self.missing_ok = missing_ok

    def load(self) -> Optional[Conversation]:
        """
        Raises:
            PersistenceError: File unreadable, not valid JSON, wrong
                version or not a conversation record. Also raised for a
                missing file when missing_ok is False.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError as e:
            if self.missing_ok:
                logger.debug("No stored conversation", path=self.path)
                return None
            raise PersistenceError(
                f"conversation file not found: {self.path}",
                path=self.path,
                code="not_found",
            ) from e
        except OSError as e:
            raise PersistenceError(
                f"reading conversation file {self.path}: {e}", path=self.path
            ) from e
        except ValueError as e:
            raise PersistenceError(
                f"decoding conversation file {self.path}: {e}", path=self.path
            ) from e

        if not isinstance(document, dict):
            raise PersistenceError(
                f"decoding conversation file {self.path}: expected an object",
                path=self.path,
            )

        version = document.get("version")
        if version != STORE_VERSION:
            raise PersistenceError(
                f"unsupported conversation file version {version!r} in {self.path}",
                path=self.path,
                code="unsupported_version",
            )

        try:
            conversation = Conversation.from_dict(document["conversation"])
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"decoding conversation file {self.path}: {e!r}", path=self.path
            ) from e

        logger.info(
            "Loaded conversation",
            path=self.path,
            messages=len(conversation.messages),
        )
        return conversation

    def save(self, conversation: Conversation) -> None:
        """
        Raises:
            PersistenceError: Encoding failed or the file could not be
                written. The previous file, if any, is left intact.
        """
        try:
            payload = json.dumps(
                {"version": STORE_VERSION, "conversation": conversation.to_dict()},
                ensure_ascii=False,
                indent=2,
            )
        except (TypeError, ValueError) as e:
            raise PersistenceError(
                f"encoding conversation: {e}", path=self.path
            ) from e

        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=".convostream-", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise PersistenceError(
                f"writing conversation file {self.path}: {e}", path=self.path
            ) from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.info(
            "Saved conversation",
            path=self.path,
            messages=len(conversation.messages),
        )
