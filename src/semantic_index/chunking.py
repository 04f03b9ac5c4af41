"""Content-aware text chunking.

Splits extracted document text into bounded, overlap-preserving spans. Every
strategy is a pure function of ``(content, content_type, options)``: same
input, same chunks. Token counts are a character heuristic
(``ceil(len / 4)``), not a tokenizer.

Strategies:
    - sentence / semantic: punctuation-delimited sentences, semantic uses an
      80% ceiling
    - paragraph: blank-line-delimited paragraphs
    - fixed: raw character windows
    - markdown / html: line walks that respect fences, tables and nesting

Chunk offsets describe the source region a chunk is responsible for. The
overlap prefix a chunk repeats from its predecessor is part of ``content``
but not of ``[start_offset, end_offset)``, so the spans of one document tile
it without gaps.
"""

import bisect
import dataclasses
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from semantic_index.errors import ConfigurationError

CHARS_PER_TOKEN = 4
SEMANTIC_CEILING_RATIO = 0.8
HEADING_FLUSH_RATIO = 0.7


class ChunkingStrategy(str, Enum):
    """Named chunking strategies."""

    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"
    SEMANTIC = "semantic"
    FIXED = "fixed"
    MARKDOWN = "markdown"
    HTML = "html"


GENERIC_STRATEGIES = frozenset(
    {
        ChunkingStrategy.SENTENCE,
        ChunkingStrategy.PARAGRAPH,
        ChunkingStrategy.SEMANTIC,
        ChunkingStrategy.FIXED,
    }
)


class ContentType(str, Enum):
    """Shape of extracted content.

    ``markdown`` and ``html`` are structured markup. ``pdf`` is page markup
    with ``--- Page N ---`` separator lines. ``docx`` is markdown produced by
    office-document conversion.
    """

    PLAIN = "plain"
    MARKDOWN = "markdown"
    HTML = "html"
    PDF = "pdf"
    DOCX = "docx"


@dataclass(frozen=True)
class ChunkingOptions:
    """Per-call chunking options.

    Attributes:
        target_tokens: Size ceiling of a chunk in estimated tokens
        overlap_tokens: Overlap budget carried into the next chunk
        strategy: Requested strategy (may be upgraded by content type)
        min_chunk_tokens: Trailing chunks below this merge into their predecessor
            when the result still fits
        preserve_whitespace: If False, collapse space runs and blank-line runs
    """

    target_tokens: int = 1000
    overlap_tokens: int = 200
    strategy: ChunkingStrategy = ChunkingStrategy.SENTENCE
    min_chunk_tokens: int = 100
    preserve_whitespace: bool = True

    def __post_init__(self) -> None:
        """Validate and normalise option values."""
        try:
            strategy = ChunkingStrategy(self.strategy)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown chunking strategy {self.strategy!r}") from exc
        object.__setattr__(self, "strategy", strategy)

        if self.target_tokens <= 0:
            raise ConfigurationError(
                f"target_tokens must be positive, got {self.target_tokens}"
            )
        if self.overlap_tokens < 0:
            raise ConfigurationError(
                f"overlap_tokens must be non-negative, got {self.overlap_tokens}"
            )
        if self.overlap_tokens >= self.target_tokens:
            raise ConfigurationError(
                f"overlap_tokens ({self.overlap_tokens}) must be less than "
                f"target_tokens ({self.target_tokens})"
            )
        if self.min_chunk_tokens < 0:
            raise ConfigurationError(
                f"min_chunk_tokens must be non-negative, got {self.min_chunk_tokens}"
            )

    def with_overrides(self, **overrides: object) -> "ChunkingOptions":
        """Return a copy with the given non-None fields replaced."""
        values = {key: value for key, value in overrides.items() if value is not None}
        unknown = set(values) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown chunking option(s): {sorted(unknown)}")
        return dataclasses.replace(self, **values)


@dataclass(frozen=True)
class ChunkSpan:
    """One chunk produced by the chunker.

    Attributes:
        content: Chunk text, including any overlap prefix
        start_offset: First character of the source region this chunk covers
        end_offset: End (exclusive) of that region
        token_estimate: ``estimate_tokens(content)``
        chunk_index: 0-indexed position in source order
        page_number: Page of ``start_offset`` for page-markup content
    """

    content: str
    start_offset: int
    end_offset: int
    token_estimate: int
    chunk_index: int
    page_number: int | None = None

    def __post_init__(self) -> None:
        if self.start_offset < 0:
            raise ValueError(f"start_offset must be non-negative, got {self.start_offset}")
        if self.end_offset < self.start_offset:
            raise ValueError(
                f"end_offset ({self.end_offset}) must be >= start_offset ({self.start_offset})"
            )
        if self.chunk_index < 0:
            raise ValueError(f"chunk_index must be non-negative, got {self.chunk_index}")


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` as ``ceil(len / 4)``."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def select_strategy(
    requested: ChunkingStrategy | str, content_type: ContentType | str
) -> ChunkingStrategy:
    """Pick the strategy actually used for a content type.

    Structure-aware requests are honoured as-is. Generic requests are upgraded
    for structured or page-oriented content: html uses the html walk, every
    other non-plain type uses the markdown walk.
    """
    strategy = ChunkingStrategy(requested)
    content_type = ContentType(content_type)

    if strategy not in GENERIC_STRATEGIES or content_type is ContentType.PLAIN:
        return strategy
    if content_type is ContentType.HTML:
        return ChunkingStrategy.HTML
    return ChunkingStrategy.MARKDOWN


def chunk_content(
    content: str,
    content_type: ContentType | str = ContentType.PLAIN,
    options: ChunkingOptions | None = None,
) -> list[ChunkSpan]:
    """Split ``content`` into ordered chunk spans.

    Args:
        content: Extracted document text
        content_type: Shape of the content, drives strategy upgrades
        options: Chunking options (defaults if omitted)

    Returns:
        Chunks in source order; empty for blank content

    Raises:
        ConfigurationError: If the content type is unknown

    Example:
        >>> options = ChunkingOptions(target_tokens=50, overlap_tokens=8)
        >>> spans = chunk_content("A. B. C.", options=options)
        >>> [(s.content, s.start_offset, s.end_offset) for s in spans]
        [('A. B. C.', 0, 8)]
    """
    options = options or ChunkingOptions()
    try:
        content_type = ContentType(content_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown content type {content_type!r}") from exc

    if not content.strip():
        return []

    strategy = select_strategy(options.strategy, content_type)
    drafts = _STRATEGIES[strategy](content, options)

    page_starts = _page_starts(content) if content_type is ContentType.PDF else None
    return [
        ChunkSpan(
            content=draft.text,
            start_offset=draft.start,
            end_offset=draft.end,
            token_estimate=estimate_tokens(draft.text),
            chunk_index=index,
            page_number=_page_at(page_starts, draft.start) if page_starts is not None else None,
        )
        for index, draft in enumerate(drafts)
    ]


# ---------------------------------------------------------------------------
# Units and chunk assembly
# ---------------------------------------------------------------------------

_SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_BLANK_LINE_RUN = re.compile(r"\n{3,}")
_WHITESPACE = re.compile(r"\s")
_PAGE_MARKER = re.compile(r"^--- Page (\d+) ---[ \t]*$", re.MULTILINE)


@dataclass
class _Unit:
    text: str
    start: int
    end: int


@dataclass
class _Draft:
    text: str
    start: int
    end: int
    prefix: str = ""
    body: list[str] = field(default_factory=list)
    hard_start: bool = False


def _units_between(content: str, start: int, end: int, cuts: list[int]) -> list[_Unit]:
    """Partition ``content[start:end]`` at ``cuts`` into non-blank units.

    Whitespace-only pieces are absorbed by the preceding unit (or the
    following one at the very beginning), so unit spans tile the range.
    """
    units: list[_Unit] = []
    piece_start = start
    for cut in [*cuts, end]:
        if cut <= piece_start:
            continue
        text = content[piece_start:cut].strip()
        if text:
            units.append(_Unit(text, piece_start, cut))
            piece_start = cut
        elif units:
            units[-1].end = cut
            piece_start = cut
    return units


def _line_units(content: str) -> list[_Unit]:
    units = []
    position = 0
    for line in content.splitlines(keepends=True):
        units.append(_Unit(line.rstrip(), position, position + len(line)))
        position += len(line)
    return units


def _overlap_tail(text: str, words: int) -> str:
    if words <= 0:
        return ""
    return " ".join(text.split()[-words:])


class _ChunkBuilder:
    """Accumulates units into drafts under a hard token ceiling.

    The ceiling is checked before every append. Units larger than the
    ceiling are hard-split first, preferring whitespace break points.
    """

    def __init__(self, content: str, options: ChunkingOptions, joiner: str, ceiling: int):
        self.content = content
        self.options = options
        self.joiner = joiner
        self.ceiling = ceiling
        self.drafts: list[_Draft] = []
        self._max_chars = ceiling * CHARS_PER_TOKEN
        self._overlap_words = options.overlap_tokens // CHARS_PER_TOKEN
        self._parts: list[str] = []
        self._has_body = False
        self._prefix = ""
        self._start = 0
        self._end = 0
        self._hard_start = False

    @property
    def tokens(self) -> int:
        """Estimated tokens of the buffered chunk, 0 when it has no text."""
        if not self._has_body:
            return 0
        return estimate_tokens(self._render(self._prefix, self._parts))

    def _render(self, prefix: str, parts: list[str]) -> str:
        body = self.joiner.join(parts)
        text = f"{prefix}{self.joiner}{body}" if prefix else body
        if not self.options.preserve_whitespace:
            text = _BLANK_LINE_RUN.sub("\n\n", _HORIZONTAL_SPACE.sub(" ", text))
        return text.strip()

    def _fits(self, text: str) -> bool:
        return estimate_tokens(self._render(self._prefix, [*self._parts, text])) <= self.ceiling

    def add(self, unit: _Unit, seed: str | None = None) -> None:
        """Append a unit, flushing first if it would breach the ceiling.

        Args:
            unit: Unit to append
            seed: Prefix for the next chunk if a flush happens (defaults to
                the overlap tail)
        """
        for piece in self._split(unit):
            if not self._fits(piece.text):
                self.flush(seed=seed)
                if not self._fits(piece.text):
                    self._prefix = ""
            self._parts.append(piece.text)
            self._has_body = self._has_body or bool(piece.text.strip())
            self._end = piece.end

    def flush(self, seed: str | None = None) -> None:
        """Emit the buffered chunk.

        Args:
            seed: Prefix for the next chunk; ``None`` uses the overlap tail and
                ``""`` starts the next chunk clean (hard boundary)
        """
        if not self._has_body:
            if seed is not None:
                self._prefix = seed
                self._hard_start = self._hard_start or seed == ""
            return
        text = self._render(self._prefix, self._parts)
        self.drafts.append(
            _Draft(text, self._start, self._end, self._prefix, list(self._parts), self._hard_start)
        )
        self._hard_start = seed == ""
        self._prefix = _overlap_tail(text, self._overlap_words) if seed is None else seed
        self._start = self._end
        self._parts = []
        self._has_body = False

    def finish(self) -> list[_Draft]:
        """Flush the tail and merge an undersized final chunk when it fits.

        A final chunk that opens at a hard boundary (rule, page marker) is
        never merged.
        """
        self.flush()
        if self.drafts and self._end > self.drafts[-1].end:
            self.drafts[-1].end = self._end

        if len(self.drafts) >= 2:
            last, previous = self.drafts[-1], self.drafts[-2]
            undersized = estimate_tokens(self._render("", last.body)) < self.options.min_chunk_tokens
            if undersized and not last.hard_start:
                merged_body = previous.body + last.body
                merged = self._render(previous.prefix, merged_body)
                if estimate_tokens(merged) <= self.ceiling:
                    self.drafts[-2:] = [
                        _Draft(
                            merged, previous.start, last.end, previous.prefix, merged_body,
                            previous.hard_start,
                        )
                    ]
        return self.drafts

    def _split(self, unit: _Unit) -> list[_Unit]:
        if len(unit.text) <= self._max_chars:
            return [unit]
        cuts = []
        position = unit.start
        while unit.end - position > self._max_chars:
            window = self.content[position : position + self._max_chars]
            breaks = [m.start() for m in _WHITESPACE.finditer(window)]
            cut = position + breaks[-1] + 1 if breaks and breaks[-1] > len(window) // 2 else None
            position = cut if cut is not None else position + self._max_chars
            cuts.append(position)
        return _units_between(self.content, unit.start, unit.end, cuts)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _accumulate(
    content: str, options: ChunkingOptions, units: list[_Unit], joiner: str, ceiling: int
) -> list[_Draft]:
    builder = _ChunkBuilder(content, options, joiner, ceiling)
    for unit in units:
        builder.add(unit)
    return builder.finish()


def _chunk_sentences(content: str, options: ChunkingOptions) -> list[_Draft]:
    cuts = [match.end() for match in _SENTENCE_END.finditer(content)]
    units = _units_between(content, 0, len(content), cuts)
    return _accumulate(content, options, units, " ", options.target_tokens)


def _chunk_semantic(content: str, options: ChunkingOptions) -> list[_Draft]:
    cuts = [match.end() for match in _SENTENCE_END.finditer(content)]
    units = _units_between(content, 0, len(content), cuts)
    ceiling = max(1, math.floor(options.target_tokens * SEMANTIC_CEILING_RATIO))
    return _accumulate(content, options, units, " ", ceiling)


def _chunk_paragraphs(content: str, options: ChunkingOptions) -> list[_Draft]:
    cuts = [match.end() for match in _PARAGRAPH_BREAK.finditer(content)]
    units = _units_between(content, 0, len(content), cuts)
    return _accumulate(content, options, units, "\n\n", options.target_tokens)


def _chunk_fixed(content: str, options: ChunkingOptions) -> list[_Draft]:
    window = options.target_tokens * CHARS_PER_TOKEN
    step = (options.target_tokens - options.overlap_tokens) * CHARS_PER_TOKEN

    drafts: list[_Draft] = []
    own_start = 0
    window_start = 0
    covered = 0
    while covered < len(content):
        window_end = min(window_start + window, len(content))
        text = content[window_start:window_end]
        if not options.preserve_whitespace:
            text = _BLANK_LINE_RUN.sub("\n\n", _HORIZONTAL_SPACE.sub(" ", text)).strip()
        if text.strip():
            drafts.append(_Draft(text, own_start, window_end))
            own_start = window_end
        elif drafts:
            drafts[-1].end = window_end
            own_start = window_end
        covered = window_end
        window_start += step
    return drafts


_FENCE = re.compile(r"^\s*(```|~~~)")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s")
_RULE = re.compile(r"^\s{0,3}([-*_])(?:\s*\1){2,}\s*$")
_TABLE_ROW = re.compile(r"^\s*\|.*\|\s*$")
_TABLE_DIVIDER = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")


def _chunk_markdown(content: str, options: ChunkingOptions) -> list[_Draft]:
    builder = _ChunkBuilder(content, options, "\n", options.target_tokens)
    heading_threshold = options.target_tokens * HEADING_FLUSH_RATIO
    fence: str | None = None
    table_header: list[str] = []

    for unit in _line_units(content):
        line = unit.text

        if fence is not None:
            if line.strip().startswith(fence):
                fence = None
            builder.add(unit)
            continue

        opening = _FENCE.match(line)
        if opening:
            fence = opening.group(1)
            table_header = []
            builder.add(unit)
            continue

        if _TABLE_ROW.match(line):
            if not table_header or (len(table_header) == 1 and _TABLE_DIVIDER.match(line)):
                table_header.append(line)
                builder.add(unit)
            else:
                # Split tables repeat their header in the next chunk.
                builder.add(unit, seed="\n".join(table_header))
            continue
        table_header = []

        if _RULE.match(line) or _PAGE_MARKER.match(line):
            builder.flush(seed="")
            builder.add(unit)
            continue

        if _HEADING.match(line) and builder.tokens > heading_threshold:
            builder.flush()
        builder.add(unit)

    return builder.finish()


_TAG = re.compile(r"<(/?)([a-zA-Z][a-zA-Z0-9]*)\b[^>]*?(/?)>")
_VOID_ELEMENTS = frozenset(
    {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source",
     "track", "wbr"}
)
_MAJOR_ELEMENTS = frozenset(
    {"h1", "h2", "h3", "h4", "h5", "h6", "section", "article", "div", "header", "footer",
     "main", "nav", "aside", "table"}
)


def _chunk_html(content: str, options: ChunkingOptions) -> list[_Draft]:
    builder = _ChunkBuilder(content, options, "\n", options.target_tokens)
    threshold = options.target_tokens * HEADING_FLUSH_RATIO
    depth = 0

    for unit in _line_units(content):
        tags = [(closing == "/", name.lower(), self_closing == "/")
                for closing, name, self_closing in _TAG.findall(unit.text)]

        if any(name == "hr" for _, name, _ in tags) and depth == 0:
            builder.flush(seed="")
        elif depth == 0 and tags and not tags[0][0] and tags[0][1] in _MAJOR_ELEMENTS:
            if builder.tokens > threshold:
                builder.flush()
        builder.add(unit)

        for closing, name, self_closing in tags:
            if closing:
                depth = max(0, depth - 1)
            elif not self_closing and name not in _VOID_ELEMENTS:
                depth += 1

    return builder.finish()


_STRATEGIES: dict[ChunkingStrategy, Callable[[str, ChunkingOptions], list[_Draft]]] = {
    ChunkingStrategy.SENTENCE: _chunk_sentences,
    ChunkingStrategy.PARAGRAPH: _chunk_paragraphs,
    ChunkingStrategy.SEMANTIC: _chunk_semantic,
    ChunkingStrategy.FIXED: _chunk_fixed,
    ChunkingStrategy.MARKDOWN: _chunk_markdown,
    ChunkingStrategy.HTML: _chunk_html,
}


def _page_starts(content: str) -> list[tuple[int, int]]:
    return [(match.start(), int(match.group(1))) for match in _PAGE_MARKER.finditer(content)]


def _page_at(page_starts: list[tuple[int, int]], offset: int) -> int:
    index = bisect.bisect_right([start for start, _ in page_starts], offset) - 1
    return page_starts[index][1] if index >= 0 else 1
