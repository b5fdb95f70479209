"""Line counting strategies keyed by file category.

Every strategy counts non-blank lines; specialized strategies also drop lines
that hold only comments for their language family.
"""

from typing import Iterable


class LineCounter:
    """Default strategy: a line counts if it is non-blank after trimming."""

    categories: tuple[str, ...] = ()

    def count_lines(self, text: str) -> int:
        return sum(1 for line in text.splitlines() if self.is_code_line(line.strip()))

    def is_code_line(self, stripped: str) -> bool:
        return bool(stripped)


class DefaultLineCounter(LineCounter):
    pass


class _BlockCommentLineCounter(LineCounter):
    """Counts lines outside comment-only lines and block comments.

    A line that has code before a block comment opens, or after one closes,
    still counts.
    """

    line_comment: str | None = None
    block_open: str = ""
    block_close: str = ""

    def count_lines(self, text: str) -> int:
        count = 0
        in_block = False
        for raw in text.splitlines():
            line = raw.strip()
            has_code = False
            while line:
                if in_block:
                    end = line.find(self.block_close)
                    if end < 0:
                        line = ""
                        break
                    line = line[end + len(self.block_close):].strip()
                    in_block = False
                    continue
                start = line.find(self.block_open)
                comment = line.find(self.line_comment) if self.line_comment else -1
                if comment >= 0 and (start < 0 or comment < start):
                    # Anything after the line comment, "/*" included, is ignored
                    if line[:comment].strip():
                        has_code = True
                    break
                if start < 0:
                    has_code = True
                    break
                if line[:start].strip():
                    has_code = True
                in_block = True
                line = line[start + len(self.block_open):]
            if has_code:
                count += 1
        return count


class CStyleCommentLineCounter(_BlockCommentLineCounter):
    """C-family sources: // line comments and /* */ blocks."""

    categories = (".cs", ".js", ".jsx", ".ts", ".tsx", ".java", ".c", ".h", ".cpp", ".go", ".scss", ".less")
    line_comment = "//"
    block_open = "/*"
    block_close = "*/"


class CssCommentLineCounter(_BlockCommentLineCounter):
    categories = (".css",)
    block_open = "/*"
    block_close = "*/"


class MarkupCommentLineCounter(_BlockCommentLineCounter):
    categories = (".html", ".htm", ".xml", ".xaml", ".cshtml", ".razor")
    block_open = "<!--"
    block_close = "-->"


class HashCommentLineCounter(LineCounter):
    """Languages with # line comments."""

    categories = (".py", ".sh", ".rb", ".yml", ".yaml", ".toml")

    def is_code_line(self, stripped: str) -> bool:
        return bool(stripped) and not stripped.startswith("#")


class LineCounterRegistry:
    """Maps a category key to its strategy, falling back to the default."""

    def __init__(self, counters: Iterable[LineCounter] = (), default: LineCounter | None = None):
        self.default = default or DefaultLineCounter()
        self._by_category: dict[str, LineCounter] = {}
        for counter in counters:
            self.register(counter)

    def register(self, counter: LineCounter, categories: Iterable[str] | None = None) -> None:
        for category in categories if categories is not None else counter.categories:
            self._by_category[category.lower()] = counter

    def for_category(self, category: str) -> LineCounter:
        return self._by_category.get(category.lower(), self.default)

    def count(self, category: str, text: str) -> int:
        return self.for_category(category).count_lines(text)


def default_registry() -> LineCounterRegistry:
    return LineCounterRegistry(
        [
            CStyleCommentLineCounter(),
            CssCommentLineCounter(),
            MarkupCommentLineCounter(),
            HashCommentLineCounter(),
        ]
    )
