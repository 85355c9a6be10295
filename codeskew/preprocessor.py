"""
The WGSL preprocessor.

Shader text is processed line by line. Every line first gets its macros
substituted, then it is either hoisted (``enable ...;``), passed through
(plain WGSL, optionally with its string literals encoded) or interpreted as a
``#`` directive. The result is a :class:`SourceMap` that the compiler turns
into pipelines. Errors are attributed to a line of the input and reported
through an error sink, processing stops at the first one.
"""

import re

from .utils import logger

NUM_ASSERT_COUNTERS = 10
STRING_MAX_LEN = 20
MAX_STORAGE_BUFFERS = 2
MAX_INCLUDE_DEPTH = 16

re_comment = re.compile(r"(//[^\n]*|/\*.*?\*/)", re.DOTALL)
re_quotes = re.compile(r'"((?:[^\\"]|\\.)*)"')
re_chevrons = re.compile(r"<(.*)>")
re_word = re.compile(r"\w+")
# the NAME of a #define is left unsubstituted so a second #define of it reports a redefinition
re_define_name = re.compile(r"(\s*#define\s+)(\w+)(.*)")
re_u32 = re.compile(r"(0[xX][0-9a-fA-F]+|[0-9]+)u?")
re_escape = re.compile(r"\\(u\{[0-9a-fA-F]{1,6}\}|.)", re.DOTALL)

_escapes = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "0": "\0",
    "\\": "\\",
    '"': '"',
    "'": "'",
}


class WGSLError(Exception):
    """An error in a shader, attributed to a 1-based line of the input."""

    def __init__(self, summary: str, line: int):
        super().__init__(summary)
        self.summary = summary
        self.line = line

    def __repr__(self):
        return f"{self.__class__.__name__}({self.summary!r}, line={self.line})"


class DirectiveSyntaxError(WGSLError):
    """Wrong arity, malformed value or unknown directive."""


class RedefinitionError(WGSLError):
    pass


class ResourceLimitError(WGSLError):
    """Too many storage buffers, assertions or nested includes."""


class IncludeNotFoundError(WGSLError):
    pass


class StringLiteralTooLongError(WGSLError):
    pass


class GpuCompilationError(WGSLError):
    """The GPU rejected the shader module or one of its pipelines."""


def report_error(summary: str, line: int):
    """The default error sink, logs the error with its location."""
    logger.error(f"{line}:0: {summary}")


def strip_comments(text: str) -> str:
    return re_comment.sub("", text)


def split_lines(text: str) -> list[str]:
    """Split text into lines, a trailing newline does not start a new line."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_u32(value: str, line: int) -> int:
    """Parse a decimal or hex integer literal (optional ``u`` suffix) as u32."""
    match = re_u32.fullmatch(value.strip())
    if match is not None:
        literal = match.group(1)
        if literal[:2].lower() == "0x":
            result = int(literal[2:], 16)
        else:
            result = int(literal)
        if result <= 0xFFFFFFFF:
            return result
    raise DirectiveSyntaxError(f"Cannot parse '{value}' as u32", line)


def unescape(text: str) -> str:
    """Decode the escape sequences in the body of a string literal.

    Supports ``\\n \\r \\t \\0 \\\\ \\" \\'`` and ``\\u{XXXX}``, raises
    ValueError for anything else.
    """

    def replace(match):
        code = match.group(1)
        if code.startswith("u{"):
            return chr(int(code[2:-1], 16))
        try:
            return _escapes[code]
        except KeyError:
            raise ValueError(f"Unknown escape sequence \\{code}") from None

    return re_escape.sub(replace, text)


def encode_string(text: str) -> str:
    """Encode a decoded string as a WGSL ``String`` constructor call."""
    chars = [ord(c) for c in text]
    chars.extend([0] * (STRING_MAX_LEN - len(chars)))
    values = ",".join(f"{c:#04x}" for c in chars)
    return f"String({len(text)}, array<uint,{STRING_MAX_LEN}>({values}))"


class Definitions:
    """Macro table, every name can be defined only once."""

    def __init__(self, builtins=None):
        self._values = {str(k): str(v) for k, v in (builtins or {}).items()}

    def __contains__(self, name):
        return name in self._values

    def __getitem__(self, name):
        return self._values[name]

    def __len__(self):
        return len(self._values)

    def items(self):
        return self._values.items()

    def define(self, name: str, value: str, line: int = 0):
        if name in self._values:
            raise RedefinitionError(f"Cannot redefine {name}", line)
        self._values[name] = value

    def substitute(self, text: str) -> str:
        """Replace every word that names a macro by its value (single pass)."""
        values = self._values
        return re_word.sub(lambda m: values.get(m.group(0), m.group(0)), text)


class SourceMap:
    """The result of preprocessing a shader.

    Holds the transformed source, its hoisted extensions, the mapping from
    output lines to input lines, the per entry point dispatch settings and
    the ``#data`` tables.
    """

    def __init__(self):
        self.extensions = ""
        self.line_map: list[int] = []
        self.workgroup_count: dict[str, tuple[int, int, int]] = {}
        self.dispatch_once: dict[str, bool] = {}
        self.dispatch_count: dict[str, int] = {}
        self.assert_map: list[int] = []
        # the bootstrap table keeps the Data struct non-empty
        self.user_data: dict[str, list[int]] = {"_dummy": [0]}
        self._lines: list[str] = []

    @property
    def source(self) -> str:
        return "".join(line + "\n" for line in self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def push_line(self, line: str, n: int):
        self._lines.append(line)
        self.line_map.append(n)

    def push_extension(self, line: str):
        self.extensions += line + "\n"

    def push_data(self, name: str, values: list[int]):
        """Append values to a data table, dropping the bootstrap table first."""
        if len(self.user_data) == 1 and "_dummy" in self.user_data:
            self.user_data.clear()
        self.user_data.setdefault(name, []).extend(values)

    def map_line(self, unit_line: int, offset: int) -> int:
        """Map a 1-based line of the compilation unit back to an input line.

        ``offset`` is the number of unit lines before the source (prelude and
        extensions). Lines outside of the source map to 0.
        """
        index = unit_line - 1 - offset
        if 0 <= index < len(self.line_map):
            return self.line_map[index]
        return 0

    def __repr__(self):
        return (
            f"<SourceMap {len(self._lines)} lines, "
            f"{len(self.assert_map)} asserts, tables {list(self.user_data)}>"
        )


class Preprocessor:
    """Turns annotated shader text into a :class:`SourceMap`.

    A Preprocessor holds the state of a single compile attempt and can only
    run once.

    Parameters:
        defines (dict): built-in macros, e.g. the target resolution.
        include_resolver (IncludeResolver): resolves ``#include`` paths. Defaults to
            the packaged includes with an HTTP fallback.
        on_error (callable): error sink called with ``(summary, line)``. Defaults
            to logging the error.
    """

    def __init__(self, defines=None, include_resolver=None, on_error=None):
        builtins = dict(defines or {})
        builtins["STRING_MAX_LEN"] = STRING_MAX_LEN
        self.defines = Definitions(builtins)
        self.include_resolver = include_resolver
        self.on_error = on_error or report_error
        self.source = SourceMap()
        self.storage_count = 0
        self.assert_count = 0
        self.special_strings = False
        self._include_depth = 0
        self._used = False

    async def run(self, shader: str):
        """Preprocess the shader. Returns the SourceMap, or None after
        reporting the first error to the error sink.
        """
        if self._used:
            raise RuntimeError("A Preprocessor can only run once.")
        self._used = True
        try:
            for idx, line in enumerate(split_lines(shader)):
                await self._process_line(line, idx + 1)
        except WGSLError as e:
            self.on_error(e.summary, e.line)
            return None
        return self.source

    def _substitute(self, line: str) -> str:
        # the name of a define is never substituted, so redefinitions are caught
        match = re_define_name.match(line)
        if match:
            head, name, rest = match.groups()
            return head + name + self.defines.substitute(rest)
        return self.defines.substitute(line)

    def _encode_strings(self, line: str, n: int) -> str:
        def replace(match):
            try:
                text = unescape(match.group(1))
            except ValueError:
                return match.group(0)
            if len(text) > STRING_MAX_LEN:
                raise StringLiteralTooLongError(
                    f"String literals cannot be longer than {STRING_MAX_LEN} characters",
                    n,
                )
            return encode_string(text)

        return re_quotes.sub(replace, line)

    async def _process_line(self, line: str, n: int):
        line = self._substitute(line)
        trimmed = line.lstrip()

        if trimmed.startswith("enable"):
            self.source.push_extension(strip_comments(line))
            return

        if not trimmed.startswith("#"):
            if self.special_strings:
                line = self._encode_strings(line, n)
            self.source.push_line(line, n)
            return

        tokens = strip_comments(line).split()
        if not tokens:
            return

        directive = tokens[0]
        if directive == "#include":
            await self._include(tokens, n)
        elif directive == "#workgroup_count":
            self._workgroup_count(tokens, n)
        elif directive == "#dispatch_once":
            if len(tokens) != 2:
                raise DirectiveSyntaxError(
                    "Dispatch once directive requires exactly one name", n
                )
            self.source.dispatch_once[tokens[1]] = True
        elif directive == "#dispatch_count":
            if len(tokens) != 3:
                raise DirectiveSyntaxError(
                    "Dispatch count directive requires name and count", n
                )
            self.source.dispatch_count[tokens[1]] = parse_u32(tokens[2], n)
        elif directive == "#define":
            if len(tokens) < 2:
                raise DirectiveSyntaxError(
                    "Define directive requires at least a name", n
                )
            self.defines.define(tokens[1], " ".join(tokens[2:]), n)
        elif directive == "#storage":
            self._storage(tokens, n)
        elif directive == "#assert":
            self._assert(tokens, n)
        elif directive == "#data":
            if len(tokens) < 4 or tokens[2] != "u32":
                raise DirectiveSyntaxError(
                    "Data directive requires name, u32 type, and data", n
                )
            values = [parse_u32(v, n) for v in "".join(tokens[3:]).split(",")]
            self.source.push_data(tokens[1], values)
        else:
            raise DirectiveSyntaxError("Unrecognised preprocessor directive", n)

    async def _include(self, tokens, n):
        if len(tokens) != 2:
            raise DirectiveSyntaxError(
                "Include directive requires exactly one argument", n
            )
        name = tokens[1]
        quoted = re_quotes.search(name)
        if quoted is not None:
            path = quoted.group(1)
        else:
            chevrons = re_chevrons.search(name)
            if chevrons is None:
                raise DirectiveSyntaxError(
                    "Path must be enclosed in quotes or chevrons", n
                )
            path = chevrons.group(1)
            if path == "string":
                self.special_strings = True
            path = f"std/{path}"

        if self._include_depth >= MAX_INCLUDE_DEPTH:
            raise ResourceLimitError("Include depth limit exceeded", n)

        if self.include_resolver is None:
            # imported here, the resolvers are only needed once a shader includes
            from .includes import default_include_resolver

            self.include_resolver = default_include_resolver()

        try:
            code = await self.include_resolver.fetch(path)
        except Exception as e:
            logger.warning(f"Failed to resolve include {path}: {e}")
            code = None
        if code is None:
            raise IncludeNotFoundError(f"Cannot find include {name}", n)

        # included lines are attributed to the line of the include directive
        self._include_depth += 1
        try:
            for line in split_lines(code):
                await self._process_line(line, n)
        finally:
            self._include_depth -= 1

    def _workgroup_count(self, tokens, n):
        if len(tokens) != 5:
            raise DirectiveSyntaxError(
                "Workgroup count directive requires name and three values", n
            )
        x, y, z = (parse_u32(token, n) for token in tokens[2:5])
        self.source.workgroup_count[tokens[1]] = (x, y, z)

    def _storage(self, tokens, n):
        if len(tokens) < 3:
            raise DirectiveSyntaxError("Storage directive requires name and type", n)
        if self.storage_count >= MAX_STORAGE_BUFFERS:
            raise ResourceLimitError(
                "Only two storage buffers are currently supported", n
            )
        name, type_str = tokens[1], " ".join(tokens[2:])
        self.source.push_line(
            f"@group(0) @binding({self.storage_count}) var<storage,read_write> {name}: {type_str};",
            n,
        )
        self.storage_count += 1

    def _assert(self, tokens, n):
        if len(tokens) < 2:
            raise DirectiveSyntaxError("Assert directive requires predicate", n)
        if self.assert_count >= NUM_ASSERT_COUNTERS:
            raise ResourceLimitError(
                f"A maximum of {NUM_ASSERT_COUNTERS} assertions are currently supported",
                n,
            )
        predicate = " ".join(tokens[1:])
        self.source.push_line(f"assert({self.assert_count}, {predicate});", n)
        self.source.assert_map.append(n)
        self.assert_count += 1


async def preprocess(shader: str, defines=None, include_resolver=None, on_error=None):
    """Preprocess shader text with a fresh :class:`Preprocessor`.

    Returns the SourceMap, or None if an error was reported to ``on_error``.
    """
    preprocessor = Preprocessor(
        defines, include_resolver=include_resolver, on_error=on_error
    )
    return await preprocessor.run(shader)
