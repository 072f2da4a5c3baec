"""AI analysis of uploaded files: summary/tags and single-file chat.

Nothing in here raises to the caller. Remote or parse failures turn into
fixed fallback results so an upload never fails because analysis did.
"""
import logging
from typing import Optional, Sequence

from clouddrive.config import settings
from clouddrive.schemas.analysis import ANALYSIS_JSON_SCHEMA, AnalysisResult, ChatTurn
from clouddrive.schemas.file import FileKind, FileRecord
from clouddrive.services.llm_base import BaseLLMProvider
from clouddrive.services.response_parser import parse_analysis_text, result_from_data

logger = logging.getLogger(__name__)

UNSUPPORTED_SUMMARY = "File type not supported for auto-analysis"
FAILED_SUMMARY = "Failed to analyze file."
MISSING_PROVIDER_REPLY = "AI service is not configured."
CHAT_FAILED_REPLY = "Error communicating with the AI service."
EMPTY_REPLY = "I couldn't generate a response."

IMAGE_ANALYSIS_PROMPT = (
    "Analyze this image. Return a raw JSON object with a 'summary' "
    "(max 2 sentences description) and 'tags' (array of 3-5 keywords). "
    "Do not wrap in markdown code blocks."
)

TEXT_KINDS = (FileKind.TEXT, FileKind.CODE)


def unsupported_result() -> AnalysisResult:
    return AnalysisResult(summary=UNSUPPORTED_SUMMARY, tags=[])


def failed_result() -> AnalysisResult:
    return AnalysisResult(summary=FAILED_SUMMARY, tags=[])


class FileAnalyzer:
    """Summarizes files and answers questions about a single file."""

    def __init__(
        self,
        provider: Optional[BaseLLMProvider],
        text_limit: Optional[int] = None,
        chat_text_limit: Optional[int] = None,
    ):
        self.provider = provider
        self.text_limit = text_limit or settings.ANALYSIS_TEXT_LIMIT
        self.chat_text_limit = chat_text_limit or settings.CHAT_TEXT_LIMIT

    async def analyze(self, file: FileRecord, image_bytes: Optional[bytes] = None) -> AnalysisResult:
        """Return a summary and tags for ``file``.

        Images are sent inline with a fixed JSON-only instruction; text is
        sampled to ``text_limit`` characters and sent with a response schema.
        Other kinds get a fixed "unsupported" result without a remote call.
        """
        is_image = file.kind == FileKind.IMAGE and image_bytes is not None
        is_text = file.kind in TEXT_KINDS and bool(file.content)
        if not (is_image or is_text):
            return unsupported_result()
        if self.provider is None:
            logger.error("Analysis of %s skipped: no AI provider configured", file.id)
            return failed_result()

        try:
            if is_image:
                text = await self.provider.generate_with_image(
                    IMAGE_ANALYSIS_PROMPT, image_bytes, mime_type=file.mime_type or "image/png",
                )
                return parse_analysis_text(text)

            sample = file.content[: self.text_limit]
            data = await self.provider.generate_json(
                f'Analyze the following text file named "{file.name}".\n\nContent:\n{sample}',
                json_schema=ANALYSIS_JSON_SCHEMA,
            )
            return result_from_data(data)
        except Exception as e:
            logger.error("Analysis of %s failed: %s", file.id, e)
            return failed_result()

    def _chat_prompt(self, file: FileRecord, message: str, history: Sequence[ChatTurn]) -> str:
        sections = []
        if file.kind in TEXT_KINDS and file.content:
            sections.append(f"Context File Content:\n{file.content[: self.chat_text_limit]}\n")
        if history:
            lines = [
                f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}"
                for turn in history
            ]
            sections.append("Previous conversation:\n" + "\n".join(lines) + "\n")
        sections.append(message)
        return "\n".join(sections)

    async def chat(
        self,
        file: FileRecord,
        message: str,
        image_bytes: Optional[bytes] = None,
        history: Sequence[ChatTurn] = (),
    ) -> str:
        """Answer ``message`` about ``file``.

        The file context is re-attached on every call; the service keeps no
        conversation state. Prior turns are only sent when ``history`` is given.
        """
        if self.provider is None:
            return MISSING_PROVIDER_REPLY
        prompt = self._chat_prompt(file, message, history)
        try:
            if file.kind == FileKind.IMAGE and image_bytes is not None:
                reply = await self.provider.generate_with_image(
                    prompt, image_bytes, mime_type=file.mime_type or "image/png",
                )
            else:
                reply = await self.provider.generate(prompt)
        except Exception as e:
            logger.error("Chat about %s failed: %s", file.id, e)
            return CHAT_FAILED_REPLY
        return reply.strip() or EMPTY_REPLY
