"""Detect fenced blocks in assistant output and keep per-identifier version chains."""

from __future__ import annotations

import logging
import re

from .errors import InvalidArgument
from .models import Artifact, ArtifactCandidate, ArtifactType
from .storage import ConversationStore

logger = logging.getLogger(__name__)

# ```lang key="value"\n ... ```; the first closing fence ends the block
FENCE_PATTERN = re.compile(r"```([^\n`]*)\n(.*?)```", re.DOTALL)

# Matches key="value" and key=value pairs in the info string
ATTR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|(\S+))')

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

DEFAULT_LANGUAGE = "text"

DEFAULT_LANGUAGE_KINDS: dict[str, ArtifactType] = {
    "html": ArtifactType.MARKUP,
    "htm": ArtifactType.MARKUP,
    "xml": ArtifactType.MARKUP,
    "svg": ArtifactType.VECTOR_GRAPHIC,
    "mermaid": ArtifactType.DIAGRAM,
    "markdown": ArtifactType.DOCUMENT,
    "md": ArtifactType.DOCUMENT,
    "text": ArtifactType.DOCUMENT,
    "txt": ArtifactType.DOCUMENT,
    "jsx": ArtifactType.COMPONENT,
    "tsx": ArtifactType.COMPONENT,
    "react": ArtifactType.COMPONENT,
}

KIND_LABELS: dict[ArtifactType, str] = {
    ArtifactType.CODE: "Code",
    ArtifactType.MARKUP: "HTML",
    ArtifactType.VECTOR_GRAPHIC: "SVG",
    ArtifactType.DIAGRAM: "Diagram",
    ArtifactType.DOCUMENT: "Document",
    ArtifactType.COMPONENT: "React Component",
    ArtifactType.OTHER: "Artifact",
}

# Plain javascript that reads like a React component
REACT_MARKERS = (
    "React.",
    "useState",
    "useEffect",
    "export default function",
    "return (",
    "className=",
)


def is_valid_identifier(identifier: str | None) -> bool:
    return bool(identifier) and IDENTIFIER_PATTERN.match(identifier) is not None


class ArtifactExtractor:
    """Pure scanner turning fenced blocks into artifact candidates.

    The language-to-kind table is per instance; ``register`` extends it.
    Tags not in the table are code.
    """

    def __init__(self, kinds: dict[str, ArtifactType] | None = None):
        self.kinds = dict(DEFAULT_LANGUAGE_KINDS if kinds is None else kinds)

    def register(self, tag: str, kind: ArtifactType | str):
        self.kinds[tag.lower()] = ArtifactType(kind)

    def classify(self, language: str, content: str) -> ArtifactType:
        tag = language.lower()
        if tag in self.kinds:
            return self.kinds[tag]
        if tag in ("javascript", "js") and any(m in content for m in REACT_MARKERS):
            return ArtifactType.COMPONENT
        return ArtifactType.CODE

    def extract(self, text: str, sequence: int | None = None) -> list[ArtifactCandidate]:
        """Return one candidate per closed fenced block, in order of appearance.

        ``sequence`` is a monotonically increasing number (the producing
        message's id) folded into positional identifiers so they stay unique
        across messages. Blocks whose fence never closes, or whose body is
        blank, are skipped and take no ordinal.
        """
        candidates: list[ArtifactCandidate] = []

        ordinal = 0
        for match in FENCE_PATTERN.finditer(text):
            language, attrs = _parse_info(match.group(1))
            content = match.group(2)
            if content.endswith("\n"):
                content = content[:-1]
            if not content.strip():
                continue
            ordinal += 1

            kind = self.classify(language, content)
            identifier = attrs.get("identifier") or attrs.get("id")
            if not is_valid_identifier(identifier):
                identifier = (
                    f"artifact_{sequence}_{ordinal}" if sequence is not None
                    else f"artifact_{ordinal}"
                )

            candidates.append(ArtifactCandidate(
                type=kind,
                language=language,
                content=content,
                title=attrs.get("title") or f"{KIND_LABELS[kind]} {ordinal}",
                identifier=identifier,
            ))

        return candidates


def _parse_info(info: str) -> tuple[str, dict[str, str]]:
    """Split a fence info string into its language tag and key=value attributes."""
    info = info.strip()
    attrs = {
        key.lower(): quoted if quoted else bare
        for key, quoted, bare in ATTR_PATTERN.findall(info)
    }
    first = info.split(None, 1)[0] if info else ""
    language = first if first and "=" not in first else DEFAULT_LANGUAGE
    return language, attrs


_default_extractor = ArtifactExtractor()


def extract_artifacts(text: str, sequence: int | None = None) -> list[ArtifactCandidate]:
    return _default_extractor.extract(text, sequence=sequence)


class ArtifactVersioner:
    """Appends artifact versions; a stored version is never rewritten."""

    def __init__(self, store: ConversationStore):
        self.store = store

    def reconcile(
        self,
        conversation_id: int,
        message_id: int,
        candidate: ArtifactCandidate,
    ) -> Artifact:
        """Store ``candidate`` as the next version of its identifier in this conversation.

        Matching is exact on identifier and scoped to the conversation. The
        first occurrence becomes version 1. Later ones get ``previous + 1``,
        inheriting type, title and language the candidate leaves unset.
        Identical content is not deduplicated.
        """
        if not is_valid_identifier(candidate.identifier):
            raise InvalidArgument(f"Malformed artifact identifier: {candidate.identifier!r}")
        if not candidate.content.strip():
            raise InvalidArgument("Artifact content must not be empty")

        with self.store.conversation_lock(conversation_id):
            previous = self.store.latest_artifact(conversation_id, candidate.identifier)
            if previous is None:
                artifact = self.store.insert_artifact(
                    conversation_id,
                    message_id,
                    type=candidate.type or ArtifactType.OTHER,
                    identifier=candidate.identifier,
                    content=candidate.content,
                    version=1,
                    title=candidate.title,
                    language=candidate.language,
                )
            else:
                artifact = self.store.insert_artifact(
                    conversation_id,
                    message_id,
                    type=candidate.type or previous.type,
                    identifier=previous.identifier,
                    content=candidate.content,
                    version=previous.version + 1,
                    title=candidate.title if candidate.title is not None else previous.title,
                    language=candidate.language if candidate.language is not None else previous.language,
                )

        logger.debug(
            "Stored artifact %s v%d in conversation %d",
            artifact.identifier, artifact.version, conversation_id,
        )
        return artifact

    def create_version(self, artifact_id: int, new_content: str) -> Artifact:
        """User edit of an artifact: always a new version, the target row stays as is."""
        if not new_content or not new_content.strip():
            raise InvalidArgument("Artifact content must not be empty")
        source = self.store.get_artifact(artifact_id)
        return self.reconcile(
            source.conversation_id,
            source.message_id,
            ArtifactCandidate(content=new_content, identifier=source.identifier),
        )

    def version_chain(self, conversation_id: int, identifier: str) -> list[Artifact]:
        if not is_valid_identifier(identifier):
            raise InvalidArgument(f"Malformed artifact identifier: {identifier!r}")
        return self.store.artifact_versions(conversation_id, identifier)

    def versions_of(self, artifact_id: int) -> list[Artifact]:
        artifact = self.store.get_artifact(artifact_id)
        return self.version_chain(artifact.conversation_id, artifact.identifier)
