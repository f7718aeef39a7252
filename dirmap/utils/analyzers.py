# dirmap/utils/analyzers.py
"""
Regex-based symbol extraction and path filters.

Extraction is table driven: LANGUAGE_RULES maps a language tag to the
patterns used for that language. Supporting a new language means adding a
row to the table (and its extensions to FileTypeDetector).
"""

from __future__ import annotations
import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Pattern, Tuple

from dirmap.config.settings import cfg
from dirmap.utils.file_types import FileTypeDetector

logger = logging.getLogger(__name__)


# Keywords that look like calls to the loose C-family patterns
IGNORED_KEYWORDS = {"if", "for", "while", "switch", "catch", "return", "sizeof", "else"}

BINARY_SNIFF_BYTES = 512


@dataclass(frozen=True)
class ExtractionRule:
    function_patterns: Tuple[str, ...]
    class_patterns: Tuple[str, ...] = ()
    import_patterns: Tuple[str, ...] = ()
    _compiled: Dict[str, List[Pattern[str]]] = field(default_factory=dict, compare=False, repr=False)

    def compiled(self, kind: str) -> List[Pattern[str]]:
        if kind not in self._compiled:
            source = {
                "function": self.function_patterns,
                "class": self.class_patterns,
                "import": self.import_patterns,
            }[kind]
            self._compiled[kind] = [re.compile(p, re.MULTILINE) for p in source]
        return self._compiled[kind]


_JS_FUNCTIONS = (
    r"function\s*\*?\s+([a-zA-Z_$][\w$]*)\s*\(",
    r"^\s*(?:export\s+)?(?:const|let|var)\s+([a-zA-Z_$][\w$]*)\s*=\s*(?:async\s+)?(?:function\b|\([^)]*\)\s*=>|[a-zA-Z_$][\w$]*\s*=>)",
)
_JS_CLASSES = (r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)",)
_JS_IMPORTS = (
    r"^\s*import\s+(?:[^'\"]*?\s+from\s+)?['\"]([^'\"]+)['\"]",
    r"require\(\s*['\"]([^'\"]+)['\"]\s*\)",
)
_JVM_IMPORTS = (r"^\s*import\s+(?:static\s+)?([\w.*]+)",)

LANGUAGE_RULES: Dict[str, ExtractionRule] = {
    "python": ExtractionRule(
        function_patterns=(r"^[ \t]*(?:async[ \t]+)?def[ \t]+([A-Za-z_]\w*)[ \t]*\(",),
        class_patterns=(r"^[ \t]*class[ \t]+([A-Za-z_]\w*)",),
        import_patterns=(r"^[ \t]*from[ \t]+([\w.]+)[ \t]+import\b", r"^[ \t]*import[ \t]+([\w.]+)"),
    ),
    "javascript": ExtractionRule(_JS_FUNCTIONS, _JS_CLASSES, _JS_IMPORTS),
    "typescript": ExtractionRule(
        _JS_FUNCTIONS,
        _JS_CLASSES + (r"^\s*(?:export\s+)?interface\s+([A-Za-z_$][\w$]*)",),
        _JS_IMPORTS,
    ),
    "go": ExtractionRule(
        function_patterns=(r"^func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)\s*[\[(]",),
        class_patterns=(r"^type\s+([A-Za-z_]\w*)\s+(?:struct|interface)\b",),
        import_patterns=(r"^import\s+(?:\w+\s+)?\"([^\"]+)\"", r"^\s+(?:\w+\s+)?\"([\w./-]+)\"\s*$"),
    ),
    "rust": ExtractionRule(
        function_patterns=(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+([A-Za-z_]\w*)",),
        class_patterns=(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait)\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*(?:pub\s+)?use\s+([\w:]+)",),
    ),
    "java": ExtractionRule(
        function_patterns=(
            r"^\s*(?:(?:public|private|protected|static|final|synchronized|abstract|native)\s+)+[\w<>\[\],.? ]+?\s+([a-zA-Z_]\w*)\s*\(",
        ),
        class_patterns=(r"^\s*(?:(?:public|private|protected|abstract|final|static)\s+)*(?:class|interface|enum|record)\s+([A-Za-z_]\w*)",),
        import_patterns=_JVM_IMPORTS,
    ),
    "kotlin": ExtractionRule(
        function_patterns=(r"^\s*(?:\w+\s+)*fun\s+(?:<[^>]*>\s*)?(?:[\w.]+\.)?([A-Za-z_]\w*)\s*\(",),
        class_patterns=(r"^\s*(?:\w+\s+)*(?:class|interface|object)\s+([A-Za-z_]\w*)",),
        import_patterns=_JVM_IMPORTS,
    ),
    "groovy": ExtractionRule(
        function_patterns=(r"^\s*def\s+([A-Za-z_]\w*)\s*\(",),
        class_patterns=(r"^\s*(?:class|interface|trait)\s+([A-Za-z_]\w*)",),
        import_patterns=_JVM_IMPORTS,
    ),
    "php": ExtractionRule(
        function_patterns=(r"function\s+&?([A-Za-z_]\w*)\s*\(",),
        class_patterns=(r"^\s*(?:(?:abstract|final)\s+)?(?:class|interface|trait)\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*use\s+([\w\\]+)", r"(?:require|include)(?:_once)?\s*\(?\s*['\"]([^'\"]+)['\"]"),
    ),
    "ruby": ExtractionRule(
        function_patterns=(r"^\s*def\s+(?:self\.)?([A-Za-z_]\w*[?!=]?)",),
        class_patterns=(r"^\s*(?:class|module)\s+([A-Z]\w*)",),
        import_patterns=(r"^\s*require(?:_relative)?\s+['\"]([^'\"]+)['\"]",),
    ),
    "swift": ExtractionRule(
        function_patterns=(r"^\s*(?:[@\w]+\s+)*func\s+([A-Za-z_]\w*)",),
        class_patterns=(r"^\s*(?:[@\w]+\s+)*(?:class|struct|protocol|enum|actor)\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*import\s+(\w+)",),
    ),
    "c": ExtractionRule(
        function_patterns=(r"^[A-Za-z_][\w \t\*]*?\b([A-Za-z_]\w*)\s*\([^;{}]*\)\s*\{",),
        class_patterns=(r"^\s*(?:typedef\s+)?struct\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*#\s*include\s+[<\"]([^>\"]+)[>\"]",),
    ),
    "cpp": ExtractionRule(
        function_patterns=(r"^[A-Za-z_][\w \t\*&:<>,]*?\b([A-Za-z_]\w*)\s*\([^;{}]*\)\s*(?:const\s*)?(?:noexcept\s*)?\{",),
        class_patterns=(r"^\s*(?:class|struct)\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*#\s*include\s+[<\"]([^>\"]+)[>\"]",),
    ),
    "csharp": ExtractionRule(
        function_patterns=(
            r"^\s*(?:(?:public|private|protected|internal|static|async|virtual|override|sealed|abstract|extern)\s+)+[\w<>\[\],.? ]+?\s+([A-Za-z_]\w*)\s*\(",
        ),
        class_patterns=(r"^\s*(?:(?:public|private|protected|internal|static|sealed|abstract|partial)\s+)*(?:class|interface|struct|record|enum)\s+([A-Za-z_]\w*)",),
        import_patterns=(r"^\s*using\s+(?:static\s+)?([\w.]+)\s*;",),
    ),
    "lua": ExtractionRule(
        function_patterns=(r"function\s+([A-Za-z_][\w.:]*)\s*\(", r"^\s*local\s+([A-Za-z_]\w*)\s*=\s*function\s*\("),
        import_patterns=(r"require\s*\(?\s*['\"]([^'\"]+)['\"]",),
    ),
    "zig": ExtractionRule(
        function_patterns=(r"^\s*(?:pub\s+)?(?:export\s+)?(?:inline\s+)?fn\s+([A-Za-z_]\w*)\s*\(",),
        class_patterns=(r"^\s*(?:pub\s+)?const\s+([A-Za-z_]\w*)\s*=\s*(?:extern\s+|packed\s+)?(?:struct|enum|union)\b",),
        import_patterns=(r"@import\(\s*\"([^\"]+)\"\s*\)",),
    ),
}


class CodeSymbol(NamedTuple):
    name: str
    text: str
    kind: str  # "function" | "class"
    start: int


_type_detector = FileTypeDetector()


def rule_for_extension(ext: str) -> Optional[ExtractionRule]:
    language = _type_detector.language(ext)
    if language is None:
        return None
    return LANGUAGE_RULES.get(language)


def find_symbols(content: str, ext: str) -> List[CodeSymbol]:
    """All function and class definitions in source order."""
    rule = rule_for_extension(ext)
    if rule is None or not content:
        return []

    symbols: List[CodeSymbol] = []
    seen_offsets = set()
    for kind in ("function", "class"):
        for pattern in rule.compiled(kind):
            for match in pattern.finditer(content):
                name = match.group(1)
                if not name or name in IGNORED_KEYWORDS:
                    continue
                start = match.start(1)
                if start in seen_offsets:
                    continue
                seen_offsets.add(start)
                symbols.append(CodeSymbol(name, match.group(0).strip(), kind, match.start()))

    symbols.sort(key=lambda s: s.start)
    return symbols


def extract_functions(content: str, ext: str) -> List[Tuple[str, str]]:
    """Ordered (name, matched_text) pairs for functions and classes."""
    return [(s.name, s.text) for s in find_symbols(content, ext)]


def extract_imports(content: str, ext: str) -> List[str]:
    rule = rule_for_extension(ext)
    if rule is None or not content:
        return []

    found: List[Tuple[int, str]] = []
    for pattern in rule.compiled("import"):
        for match in pattern.finditer(content):
            target = next((g for g in match.groups() if g), None)
            if target:
                found.append((match.start(), target))

    found.sort()
    imports: List[str] = []
    for _, target in found:
        if target not in imports:
            imports.append(target)
    return imports


def function_blocks(content: str, ext: str) -> Dict[str, str]:
    """
    Source slice of each symbol, from its definition up to the next one.

    Used as the per-function fingerprint content, so an edit inside a
    function body changes only that function's hash. Duplicate names
    (overloads, redefinitions) are concatenated.
    """
    symbols = find_symbols(content, ext)
    blocks: Dict[str, str] = {}
    for i, symbol in enumerate(symbols):
        end = symbols[i + 1].start if i + 1 < len(symbols) else len(content)
        block = content[symbol.start:end]
        blocks[symbol.name] = blocks.get(symbol.name, "") + block
    return blocks


def read_text(path: Path) -> str:
    """Read a source file, falling back to latin-1 for legacy encodings."""
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_text(encoding="latin-1")


def analyze_file_content(path: Path) -> Tuple[List[Tuple[str, str]], int]:
    """Returns (functions, line_count); ([], 0) if the file cannot be read."""
    path = Path(path)
    if not path.exists():
        return [], 0

    try:
        content = read_text(path)
    except OSError as e:
        logger.warning(f"Error analyzing file content {path}: {e}")
        return [], 0

    line_count = len(content.split("\n"))
    return extract_functions(content, path.suffix), line_count


def is_binary_file(path: Path) -> bool:
    path = Path(path)
    if path.suffix.lower() in cfg.BINARY_EXTENSIONS:
        return True

    try:
        with path.open("rb") as f:
            sample = f.read(BINARY_SNIFF_BYTES)
    except OSError as e:
        logger.warning(f"Error checking if file is binary {path}: {e}")
        return False

    return b"\0" in sample


def matches_ignored_file(name: str) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in cfg.IGNORED_FILES)


def has_ignored_part(parts) -> bool:
    return any(part in cfg.IGNORED_DIRECTORIES for part in parts)


def should_ignore(path: Path) -> bool:
    """
    Hidden name, ignored directory name or ignored file pattern.

    Only the last component is checked; walkers never descend into an
    ignored directory, so its children are not seen at all.
    """
    name = Path(path).name

    if name.startswith("."):
        return True
    if name in cfg.IGNORED_DIRECTORIES:
        return True
    return matches_ignored_file(name)
