"""Conventional-commit message synthesis from a staged diff.

Everything here is a pure function of the changed file list and the diff
text. Classification is driven by ordered tables (type rules, scope names,
summaries, body sentences) so that new rules are additive.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from .git_wrapper import ChangedFile

FALLBACK_MESSAGE = "chore: update changes"
"""str: Message used when there is nothing to describe."""

TEST_DIRS = {"test", "tests", "__tests__", "spec", "specs"}
DOC_DIRS = {"docs", "doc", "documentation"}
DOC_EXTENSIONS = {".md", ".mdx", ".rst", ".txt", ".adoc"}
DOC_NAMES = {"readme", "changelog", "license", "contributing", "authors"}
CI_FILES = {
    ".gitlab-ci.yml",
    ".travis.yml",
    "jenkinsfile",
    "azure-pipelines.yml",
    "bitbucket-pipelines.yml",
}
CI_DIRS = (".github/workflows/", ".circleci/", ".github/actions/")
MANIFESTS = {
    "package.json",
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "cargo.toml",
    "go.mod",
    "pom.xml",
    "build.gradle",
    "gemfile",
    "composer.json",
}
LOCKFILES = {
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "cargo.lock",
    "go.sum",
    "gemfile.lock",
    "composer.lock",
    "pipfile.lock",
}
STYLE_EXTENSIONS = {".css", ".scss", ".sass", ".less", ".styl"}
MARKUP_EXTENSIONS = {".tsx", ".jsx", ".html", ".vue", ".svelte", ".astro"}
CONFIG_EXTENSIONS = {".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".env"}
SOURCE_EXTENSIONS = {
    ".py",
    ".js",
    ".mjs",
    ".cjs",
    ".ts",
    ".tsx",
    ".jsx",
    ".go",
    ".rs",
    ".java",
    ".kt",
    ".rb",
    ".php",
    ".c",
    ".h",
    ".cc",
    ".cpp",
    ".hpp",
    ".cs",
    ".swift",
    ".scala",
    ".vue",
    ".svelte",
    ".sh",
}
SOURCE_DIRS = {"src", "lib", "app", "pkg", "cmd", "internal", "components", "packages"}
COMPONENT_DIRS = {"components", "ui", "widgets"}

GENERIC_DIRS = {"src", "lib", "app", "pkg", "source", "packages", "internal"} | TEST_DIRS | DOC_DIRS
"""set[str]: Directory names too broad to serve as a scope on their own."""

SCOPE_ALIASES = {
    "components": "ui",
    "ui": "ui",
    "widgets": "ui",
    "views": "ui",
    "styles": "theme",
    "css": "theme",
    "theme": "theme",
    "themes": "theme",
    "workflows": "workflow",
    "helpers": "utils",
    "util": "utils",
    "utils": "utils",
    ".github": "ci",
    ".circleci": "ci",
}
"""dict[str, str]: Directory name to scope mapping; unlisted names are used as-is."""

STYLE_LINE = re.compile(r"className=|class=|style=|var\(--|^--[\w-]+\s*:")
STRUCTURE_LINE = re.compile(
    r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?"
    r"(?:def|class|function|interface|struct|func|fn|pub\s+fn|type\s+\w+\s*=)\b"
)
SIGNATURE_LINE = re.compile(
    r"^(?:export\s+)?(?:default\s+)?(?:pub\s+)?(?:async\s+)?"
    r"(?:def|function|func|fn)\s+([A-Za-z]\w*)\s*\(([^)]*)"
)
METHOD_LINE = re.compile(r"^(?:static\s+|async\s+|public\s+)*([A-Za-z]\w*)\s*\(([^)]*)\)\s*\{")
NOT_METHODS = {"if", "for", "while", "switch", "catch", "return", "function", "with"}
EXPORT_LINE = re.compile(r"^export\s+(?:default\s+)?(?:const|function|class)\s+([A-Z]\w*)")
CONFIG_KEY_LINE = re.compile(r"""^["']?([A-Za-z_][\w.-]{0,40})["']?\s*[:=]""")
VERSION_LINE = re.compile(r"""^["']?version["']?\s*[:=]\s*["']?([\w.+-]+)""")
DEPENDENCY_LINE = re.compile(
    r"""^["']?[@\w./-]+["']?\s*[:=]\s*["']?(?:[\^~<>=!*]|v?\d|workspace:|latest)"""
)
BREAKING_MARKER = re.compile(r"BREAKING[ -]CHANGE:?\s*(.*)")


@dataclass
class FileDiff:
    """Added and removed content lines for one path of a unified diff.

    Attributes:
        path (str): Destination path of the change.
        added (list[str]): Stripped, non-empty added lines.
        removed (list[str]): Stripped, non-empty removed lines.
        is_new (bool): The diff header declared a new file.
        is_deleted (bool): The diff header declared a deleted file.
    """

    path: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    is_new: bool = False
    is_deleted: bool = False

    @property
    def changed_lines(self) -> list[str]:
        return self.added + self.removed


def parse_diff(diff_text: str) -> dict[str, FileDiff]:
    """Parses unified diff text into per-file line lists.

    Args:
        diff_text (str): Output of `git diff --cached`.

    Returns:
        dict[str, FileDiff]: Entries keyed by destination path, in diff order.
    """
    files: dict[str, FileDiff] = {}
    current: FileDiff | None = None
    in_hunk = False

    for line in diff_text.splitlines():
        if line.startswith("diff --git "):
            header = line[len("diff --git ") :]
            path = header.rsplit(" b/", 1)[-1] if " b/" in header else header.split(" ")[-1]
            current = files.setdefault(path, FileDiff(path))
            in_hunk = False
            continue
        if current is None:
            continue

        if not in_hunk:
            if line.startswith("new file mode"):
                current.is_new = True
            elif line.startswith("deleted file mode"):
                current.is_deleted = True
            elif line.startswith("+++ b/"):
                # The +++ header is unambiguous for paths containing " b/".
                path = line[len("+++ b/") :]
                if path != current.path:
                    files.pop(current.path, None)
                    current.path = path
                    files[path] = current
            elif line.startswith("@@"):
                in_hunk = True
            continue

        if line.startswith("@@"):
            continue
        if line.startswith("+"):
            content = line[1:].strip()
            if content:
                current.added.append(content)
        elif line.startswith("-"):
            content = line[1:].strip()
            if content:
                current.removed.append(content)

    return files


def classify_path(path: str) -> str:
    """Assigns a path to one of: ci, test, docs, packaging, style, source, other."""
    p = PurePosixPath(path)
    name = p.name.lower()
    parts = [part.lower() for part in p.parts[:-1]]
    suffix = p.suffix.lower()

    if name in CI_FILES or any(path.lower().startswith(d) for d in CI_DIRS):
        return "ci"
    if (
        TEST_DIRS.intersection(parts)
        or name.startswith("test_")
        or name == "conftest.py"
        or re.search(r"[._-](test|spec)\.[^.]+$", name)
    ):
        return "test"
    if name in MANIFESTS or name in LOCKFILES or name.startswith("requirements"):
        return "packaging"
    if suffix in DOC_EXTENSIONS or DOC_DIRS.intersection(parts) or p.stem.lower() in DOC_NAMES:
        return "docs"
    if suffix in STYLE_EXTENSIONS:
        return "style"
    if suffix in SOURCE_EXTENSIONS or SOURCE_DIRS.intersection(parts):
        return "source"
    return "other"


@dataclass
class Analysis:
    """Everything the rule tables look at.

    Attributes:
        files (list[ChangedFile]): The changed files, deduplicated by path.
        diffs (dict[str, FileDiff]): Parsed diff per path (empty entries for
            paths the diff does not mention).
        categories (dict[str, str]): Result of classify_path per path.
        signals (dict[str, list[str]]): Signal name to supporting details
            (names, keys, versions); insertion order is detection order.
    """

    files: list[ChangedFile]
    diffs: dict[str, FileDiff]
    categories: dict[str, str]
    signals: dict[str, list[str]] = field(default_factory=dict)

    def signal(self, name: str, detail: str | None = None) -> None:
        details = self.signals.setdefault(name, [])
        if detail is not None and detail not in details:
            details.append(detail)

    def has(self, name: str) -> bool:
        return name in self.signals

    def all_in(self, *categories: str) -> bool:
        return bool(self.categories) and all(c in categories for c in self.categories.values())

    def is_new(self, path: str) -> bool:
        f = next(f for f in self.files if f.path == path)
        return f.is_new or self.diffs[path].is_new

    def is_deleted(self, path: str) -> bool:
        f = next(f for f in self.files if f.path == path)
        return f.is_deleted or self.diffs[path].is_deleted

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


def analyze(changed_files: Iterable[ChangedFile], diff_text: str) -> Analysis:
    """Parses the diff and derives content and path signals."""
    files = list({f.path: f for f in changed_files}.values())
    parsed = parse_diff(diff_text or "")
    diffs = {f.path: parsed.get(f.path, FileDiff(f.path)) for f in files}
    categories = {f.path: classify_path(f.path) for f in files}
    analysis = Analysis(files, diffs, categories)

    for path, diff in diffs.items():
        p = PurePosixPath(path)
        suffix = p.suffix.lower()
        name = p.name.lower()
        parts = {part.lower() for part in p.parts[:-1]}
        category = categories[path]

        if analysis.is_new(path):
            analysis.signal("new_files", path)
        elif analysis.is_deleted(path):
            analysis.signal("deleted_files", path)
        for f in files:
            if f.path == path and f.is_renamed and f.orig_path:
                analysis.signal("renamed_files", f"{f.orig_path} -> {path}")

        if category in ("test", "docs", "ci"):
            analysis.signal(category, path)

        for line in diff.changed_lines:
            if suffix in MARKUP_EXTENSIONS and re.search(r"className=|class=|style=", line):
                analysis.signal("ui_markup")
            if "var(--" in line or (suffix in STYLE_EXTENSIONS and line.startswith("--")):
                analysis.signal("style_tokens")
            if "BREAKING CHANGE" in line or "BREAKING-CHANGE" in line:
                match = BREAKING_MARKER.search(line)
                analysis.signal("breaking_marker", match.group(1).strip() if match else None)

        if suffix in CONFIG_EXTENSIONS and category not in ("packaging", "ci"):
            for line in diff.added:
                match = CONFIG_KEY_LINE.match(line)
                if match:
                    analysis.signal("config_keys", match.group(1))

        if COMPONENT_DIRS.intersection(parts):
            for line in diff.added:
                match = EXPORT_LINE.match(line)
                if match:
                    analysis.signal("components", match.group(1))

        if name in LOCKFILES:
            analysis.signal("dependency_change", path)
        elif category == "packaging":
            _packaging_signals(analysis, diff)

        if category == "source" and not analysis.is_new(path):
            if any(STRUCTURE_LINE.match(line) for line in diff.removed):
                analysis.signal("structural_deletion", path)
            for signature in _changed_signatures(diff):
                analysis.signal("signature_change", signature)

    return analysis


def _packaging_signals(analysis: Analysis, diff: FileDiff) -> None:
    new_version = next(
        (m.group(1) for m in map(VERSION_LINE.match, diff.added) if m), None
    )
    old_version = next(
        (m.group(1) for m in map(VERSION_LINE.match, diff.removed) if m), None
    )
    if new_version and new_version != old_version:
        analysis.signal("version_bump", new_version)

    others = [line for line in diff.changed_lines if not VERSION_LINE.match(line)]
    if any(DEPENDENCY_LINE.match(line) for line in others):
        analysis.signal("dependency_change", diff.path)


def _signatures(lines: list[str]) -> dict[str, str]:
    found = {}
    for line in lines:
        match = SIGNATURE_LINE.match(line) or METHOD_LINE.match(line)
        if not match:
            continue
        name, params = match.group(1), match.group(2)
        if name.startswith("_") or name in NOT_METHODS:
            continue
        found[name] = re.sub(r"\s+", " ", params).strip()
    return found


def _changed_signatures(diff: FileDiff) -> list[str]:
    """Names of public callables whose parameter list differs between - and + lines."""
    before = _signatures(diff.removed)
    after = _signatures(diff.added)
    return [name for name in before if name in after and before[name] != after[name]]


def _styling_only(a: Analysis) -> bool:
    lines = [line for d in a.diffs.values() for line in d.changed_lines]
    return bool(lines) and all(STYLE_LINE.search(line) for line in lines)


def _new_source(a: Analysis) -> bool:
    return any(a.categories[p] == "source" and a.is_new(p) for p in a.paths)


def _structural(a: Analysis) -> bool:
    return not a.has("new_files") and a.has("structural_deletion")


TYPE_RULES: list[tuple[str, Callable[[Analysis], bool]]] = [
    ("test", lambda a: a.all_in("test")),
    ("docs", lambda a: a.all_in("docs")),
    ("ci", lambda a: a.all_in("ci")),
    ("chore", lambda a: a.all_in("packaging")),
    ("style", lambda a: a.all_in("style") or _styling_only(a)),
    ("feat", _new_source),
    ("refactor", _structural),
    ("fix", lambda a: "source" in a.categories.values()),
]
"""list: Ordered (type, predicate) rules; the first match wins, else 'chore'."""


def resolve_type(analysis: Analysis) -> str:
    for commit_type, predicate in TYPE_RULES:
        if predicate(analysis):
            return commit_type
    return "chore"


def sanitize_scope(value: str) -> str | None:
    scope = re.sub(r"[^a-z0-9_-]+", "-", value.lower()).strip("-")
    return scope or None


def _file_stem(path: str) -> str:
    name = PurePosixPath(path).name.lstrip(".")
    stem = name.split(".", 1)[0]
    if stem.startswith("test_") and len(stem) > 5:
        stem = stem[5:]
    for suffix in ("_test", "-test", "_spec"):
        if stem.endswith(suffix) and len(stem) > len(suffix):
            stem = stem[: -len(suffix)]
    return stem


def _common_directory(paths: list[str]) -> list[str]:
    dirs = [PurePosixPath(p).parts[:-1] for p in paths]
    common: list[str] = []
    for level in zip(*dirs, strict=False):
        if len(set(level)) != 1:
            break
        common.append(level[0])
    return common


SIGNAL_SCOPES = [
    ("style_tokens", "theme"),
    ("ui_markup", "ui"),
    ("components", "ui"),
    ("config_keys", "config"),
    ("dependency_change", "deps"),
]
"""list: Signal-to-scope fallbacks when the paths do not agree on a directory."""


def resolve_scope(analysis: Analysis) -> str | None:
    """Picks a scope: release/deps overrides, shared directory, file stem, signal."""
    if analysis.all_in("packaging"):
        if analysis.has("version_bump"):
            return "release"
        if analysis.has("dependency_change"):
            return "deps"

    common = _common_directory(analysis.paths)
    for name in reversed(common):
        alias = SCOPE_ALIASES.get(name.lower())
        if alias:
            return alias
        if name.lower() not in GENERIC_DIRS:
            return sanitize_scope(name)

    if len(analysis.files) == 1:
        return sanitize_scope(_file_stem(analysis.files[0].path))

    for signal, scope in SIGNAL_SCOPES:
        if analysis.has(signal):
            return scope
    return None


def detect_breaking(analysis: Analysis, commit_type: str) -> str | None:
    """Returns the footer text for a breaking change, or None."""
    if analysis.has("breaking_marker"):
        details = analysis.signals["breaking_marker"]
        return details[0] if details else "see commit body for details"
    if commit_type == "refactor" and analysis.has("signature_change"):
        names = analysis.signals["signature_change"]
        return f"{_join(names)} now {'take' if len(names) > 1 else 'takes'} different parameters"
    return None


def _join(items: list[str], limit: int = 3) -> str:
    if len(items) > limit:
        return f"{', '.join(items[:limit])} and {len(items) - limit} more"
    return ", ".join(items)


def _target(analysis: Analysis, scope: str | None) -> str:
    if scope:
        return scope
    names = [PurePosixPath(p).name for p in analysis.paths]
    if len(names) > 3:
        return f"{len(names)} files"
    return _join(names)


SUMMARIES: list[tuple[tuple[str, str | None], Callable[[Analysis, str], str]]] = [
    (
        ("chore", "release"),
        lambda a, t: f"bump version to {a.signals['version_bump'][0]}"
        if a.has("version_bump")
        else "bump version",
    ),
    (("chore", "deps"), lambda a, t: "update dependencies"),
    (("style", "theme"), lambda a, t: "update theme variables"),
    (("style", "ui"), lambda a, t: "adjust component styling"),
    (("style", None), lambda a, t: f"adjust styling of {t}"),
    (
        ("test", None),
        lambda a, t: f"add tests for {t}" if a.has("new_files") else f"update tests for {t}",
    ),
    (("docs", None), lambda a, t: f"update {t} documentation"),
    (("ci", None), lambda a, t: f"update {t} pipeline"),
    (
        ("feat", "ui"),
        lambda a, t: f"add {_join(a.signals['components'])} component"
        if a.has("components")
        else f"add {t}",
    ),
    (("feat", None), lambda a, t: f"add {t}"),
    (
        ("refactor", None),
        lambda a, t: f"change {_join(a.signals['signature_change'])} signature"
        if a.has("signature_change")
        else f"restructure {t}",
    ),
]
"""list: Ordered ((type, scope), builder) entries; a None scope matches any scope."""


def summarize(analysis: Analysis, commit_type: str, scope: str | None) -> str:
    target = _target(analysis, scope)
    for (rule_type, rule_scope), build in SUMMARIES:
        if rule_type == commit_type and rule_scope in (None, scope):
            return build(analysis, target)
    return f"update {target}"


BODY_SENTENCES: list[tuple[str, Callable[[list[str]], str]]] = [
    ("new_files", lambda d: f"- Added {_join(d)}"),
    ("deleted_files", lambda d: f"- Removed {_join(d)}"),
    ("renamed_files", lambda d: f"- Renamed {_join(d)}"),
    ("components", lambda d: f"- Exported {_join(d)} from the component library"),
    ("ui_markup", lambda d: "- Updated component markup classes"),
    ("style_tokens", lambda d: "- Updated theme variables"),
    ("config_keys", lambda d: f"- Changed configuration keys: {_join(d, limit=5)}"),
    ("version_bump", lambda d: f"- Updated package version to {d[0]}"),
    ("dependency_change", lambda d: "- Updated dependency versions"),
    ("signature_change", lambda d: f"- Changed the signature of {_join(d)}"),
    ("test", lambda d: "- Updated tests"),
    ("docs", lambda d: "- Updated documentation"),
    ("ci", lambda d: "- Updated CI configuration"),
]
"""list: Signal to body sentence, in output order."""

# Path-category bullets are noise when every file is in that category.
_CATEGORY_SIGNALS = {"test", "docs", "ci"}


def body_bullets(analysis: Analysis) -> list[str]:
    bullets = []
    for signal, sentence in BODY_SENTENCES:
        if not analysis.has(signal):
            continue
        if signal in _CATEGORY_SIGNALS and analysis.all_in(signal):
            continue
        bullets.append(sentence(analysis.signals[signal]))
    return list(dict.fromkeys(bullets))


def synthesize(changed_files: Iterable[ChangedFile], diff_text: str) -> str:
    """Builds a conventional-commit message for a set of staged changes.

    Args:
        changed_files (Iterable[ChangedFile]): The files being committed.
        diff_text (str): The staged unified diff (may be empty).

    Returns:
        str: `type(scope)[!]: summary`, an optional bullet body and an
             optional `BREAKING CHANGE:` footer.
    """
    analysis = analyze(changed_files, diff_text)
    if not analysis.files:
        return FALLBACK_MESSAGE

    commit_type = resolve_type(analysis)
    scope = resolve_scope(analysis)
    breaking = detect_breaking(analysis, commit_type)
    summary = summarize(analysis, commit_type, scope)

    header = commit_type
    if scope:
        header += f"({scope})"
    if breaking:
        header += "!"
    message = f"{header}: {summary}"

    bullets = body_bullets(analysis)
    if bullets:
        message += "\n\n" + "\n".join(bullets)
    if breaking:
        message += f"\n\nBREAKING CHANGE: {breaking}"
    return message
