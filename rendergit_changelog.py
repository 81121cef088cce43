"""
Render a repository's release history as a changelog.

Release tags matching a pattern are read from `git log`, consecutive tags are
paired into "older..newer" ranges, and the commits of every range are printed
as three documents describing the same data:

- JSON: the machine-readable changelog
- Markdown: one section per range, one bullet per commit
- HTML: the Markdown converted and wrapped in a minimal page
"""

from __future__ import annotations
import argparse
import dataclasses
import json
import os
import re
import subprocess
import sys
from typing import List, Optional, Tuple, cast

import mistune
from pygments import highlight
from pygments.formatters import TerminalFormatter
from pygments.lexers.data import JsonLexer
from pygments.lexers.html import HtmlLexer
from pygments.lexers.markup import MarkdownLexer

# ---- constants & utilities ---------------------------------------------------

DEFAULT_RELEASE_PATTERN = r"v[\d{1,4}\.]{1,}"
PATTERN_ENV_VAR = "RENDERGIT_RELEASE_PATTERN"

# field sep 0x1f, record sep 0x1e; %f is the subject with spaces turned into hyphens
COMMIT_FIELDS = ("shortcommit", "commit", "author", "email", "date", "message")
COMMIT_FORMAT = "%h%x1f%H%x1f%an%x1f%ae%x1f%ad%x1f%f%x1e"

LAYOUT = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>Changelog</title>
  </head>
  <body>
{content}
  </body>
</html>
"""


class ChangelogError(Exception):
    """Base class for fatal changelog errors."""


class PatternError(ChangelogError):
    """The release pattern is empty or not a valid regular expression."""


class CommitFormatError(ChangelogError):
    """git log output did not have the shape requested by COMMIT_FORMAT."""


def run(cmd: List[str], cwd: str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, cwd=cwd, check=check, text=True, capture_output=True)


def warn(msg: str) -> None:
    print(f"⚠️  {msg}", file=sys.stderr)


def git_output(cmd: List[str], cwd: str | None = None) -> Optional[str]:
    """
    Run a git command and return its stdout, or None if git is missing or the
    command fails. The caller decides what an absent result means.
    """
    try:
        return run(cmd, cwd=cwd).stdout
    except OSError as e:
        where = f" in {cwd}" if cwd else ""
        warn(f"cannot run {cmd[0]}{where}: {e.strerror or e}")
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or "").strip() or f"exit status {e.returncode}"
        warn(f"`{' '.join(cmd[:3])}` failed: {detail}")
    return None


# ---- tags & ranges -----------------------------------------------------------

def compile_release_pattern(pattern: str) -> re.Pattern[str]:
    """Compile the release pattern; tag names must match it in full."""
    if not pattern:
        raise PatternError("release pattern must not be empty")
    try:
        return re.compile(pattern)
    except re.error as e:
        raise PatternError(f"invalid release pattern {pattern!r}: {e}") from e


def _scan_tags(output: str, tag_re: re.Pattern[str]) -> Tuple[List[str], int]:
    tags: List[str] = []
    unmatched = 0
    for line in output.splitlines():
        _, marker, decoration = line.partition(" @")
        if not marker or "tag: " not in decoration:
            continue
        # " (HEAD -> main, tag: v2.0, tag: v1.9, origin/main)"
        refs = decoration.strip().removeprefix("(").removesuffix(")").split(", ")
        names = [ref[len("tag: "):] for ref in refs if ref.startswith("tag: ")]
        found = [name for name in names if tag_re.fullmatch(name)]
        if not found:
            unmatched += 1
        tags.extend(found)
    return tags, unmatched


def parse_tags(output: str, pattern: str) -> List[str]:
    """
    Extract release tag names from `git log --pretty=format:'%ai @%d'` output,
    keeping the order git emitted them in (most recent first).
    """
    tags, _ = _scan_tags(output, compile_release_pattern(pattern))
    return tags


def fetch_tags(pattern: str, cwd: str | None = None) -> List[str]:
    tag_re = compile_release_pattern(pattern)
    out = git_output(["git", "log", "--tags", "--simplify-by-decoration", "--pretty=format:%ai @%d"], cwd=cwd)
    if out is None:
        return []
    tags, unmatched = _scan_tags(out, tag_re)
    if unmatched:
        print(f"Skipped {unmatched} tagged commit(s) not matching {pattern!r}", file=sys.stderr)
    return tags


def diff_ranges(tags: List[str]) -> List[str]:
    # tags are newest first; each range runs from the older tag to the newer one
    return [f"{tags[i + 1]}..{tags[i]}" for i in range(len(tags) - 1)]


# ---- commits -----------------------------------------------------------------

@dataclasses.dataclass
class Commit:
    shortcommit: str
    commit: str
    author: str
    email: str
    date: str
    message: str


@dataclasses.dataclass
class ChangeGroup:
    range: str
    commits: List[Commit]


def parse_commits(output: str) -> List[Commit]:
    commits: List[Commit] = []
    body = output.strip("\n")
    if body.endswith("\x1e"):
        body = body[:-1]
    if not body.strip():
        return commits
    for n, rec in enumerate(body.split("\x1e"), 1):
        fields = rec.strip("\n").split("\x1f")
        if len(fields) != len(COMMIT_FIELDS):
            raise CommitFormatError(
                f"commit record {n} has {len(fields)} fields, expected {len(COMMIT_FIELDS)}: {rec!r}"
            )
        commits.append(Commit(*fields))
    return commits


def fetch_commits(rng: str, cwd: str | None = None) -> List[Commit]:
    out = git_output(["git", "log", f"--pretty=format:{COMMIT_FORMAT}", rng], cwd=cwd)
    if out is None:
        return []
    return parse_commits(out)


def fetch_changes(tags: List[str], cwd: str | None = None) -> List[ChangeGroup]:
    return [ChangeGroup(range=rng, commits=fetch_commits(rng, cwd=cwd)) for rng in diff_ranges(tags)]


# ---- origin URL --------------------------------------------------------------

SCP_LIKE = re.compile(r"^[\w.-]+@[^:/]+:")


def normalize_origin_url(raw: str) -> str:
    """
    Turn a remote URL into a browsable HTTPS base ending in "/":
    git@github.com:org/repo.git -> https://github.com/org/repo/
    """
    url = raw.strip()
    if not url:
        return ""
    if SCP_LIKE.match(url):
        url = url.replace(":", "/", 1)
    if url.endswith(".git"):
        url = url[:-4]
    url = url.rstrip("/") + "/"
    for prefix in ("ssh://git@", "git@"):
        if url.startswith(prefix):
            url = "https://" + url[len(prefix):]
            break
    return url


def fetch_origin_url(cwd: str | None = None) -> str:
    out = git_output(["git", "config", "--get", "remote.origin.url"], cwd=cwd)
    return normalize_origin_url(out or "")


# ---- report ------------------------------------------------------------------

def changelog_to_json(changelog: List[ChangeGroup]) -> str:
    return json.dumps([dataclasses.asdict(g) for g in changelog], ensure_ascii=False)


def changelog_from_json(text: str) -> List[ChangeGroup]:
    return [
        ChangeGroup(range=g["range"], commits=[Commit(**c) for c in g["commits"]])
        for g in json.loads(text)
    ]


def commit_to_markdown(c: Commit, origin_url: str) -> str:
    commit_url = f"{origin_url}commit/{c.commit}"
    message = c.message.replace("-", " ")
    return f"* [{c.shortcommit}]({commit_url}) {message} [{c.author}](mailto:{c.email})\n"


def build_html(content: str) -> str:
    return LAYOUT.format(content=content)


@dataclasses.dataclass
class Report:
    pattern: str
    origin_url: str
    changelog: List[ChangeGroup]
    json: str = ""
    _markdown: Optional[str] = dataclasses.field(default=None, init=False, repr=False)
    _html: Optional[str] = dataclasses.field(default=None, init=False, repr=False)

    def markdown(self) -> str:
        if self._markdown is not None:
            return self._markdown
        parts = ["# Changelog\n"]
        for group in self.changelog:
            parts.append(f"\n## {group.range}\n\n")
            parts.extend(commit_to_markdown(c, self.origin_url) for c in group.commits)
        self._markdown = "".join(parts)
        return self._markdown

    def html(self) -> str:
        if self._html is not None:
            return self._html
        md = mistune.create_markdown(plugins=["strikethrough", "table", "url"])
        fragment = cast(str, md(self.markdown()))
        self._html = build_html(fragment)
        return self._html


def build_report(pattern: str, cwd: str | None = None) -> Report:
    tags = fetch_tags(pattern, cwd=cwd)
    origin_url = fetch_origin_url(cwd=cwd)
    changelog = fetch_changes(tags, cwd=cwd)
    return Report(pattern=pattern, origin_url=origin_url, changelog=changelog, json=changelog_to_json(changelog))


# ---- terminal output ---------------------------------------------------------

LEXERS = {"json": JsonLexer, "markdown": MarkdownLexer, "html": HtmlLexer}


def colorize(text: str, kind: str, enabled: bool) -> str:
    if not enabled:
        return text
    return highlight(text, LEXERS[kind](), TerminalFormatter())


def use_color(mode: str) -> bool:
    if mode == "always":
        return True
    if mode == "never":
        return False
    return sys.stdout.isatty()


# ---- main --------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Render a repo's release history as JSON, Markdown and HTML changelogs")
    ap.add_argument(
        "--pattern",
        default=os.environ.get(PATTERN_ENV_VAR, DEFAULT_RELEASE_PATTERN),
        help=f"Regular expression release tags must match (default: ${PATTERN_ENV_VAR} or {DEFAULT_RELEASE_PATTERN})",
    )
    ap.add_argument("--repo", default=None, help="Repository directory to read (default: current directory)")
    ap.add_argument("--color", choices=["auto", "always", "never"], default="auto", help="Highlight the documents")
    args = ap.parse_args(argv)

    try:
        print(f"🏷️  Collecting release tags matching {args.pattern!r}...", file=sys.stderr)
        report = build_report(args.pattern, cwd=args.repo)
    except PatternError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except ChangelogError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    n_commits = sum(len(g.commits) for g in report.changelog)
    print(f"✓ {len(report.changelog)} range(s), {n_commits} commit(s), origin {report.origin_url or '(none)'}", file=sys.stderr)

    color = use_color(args.color)
    print(colorize(report.json, "json", color))
    print(colorize(report.markdown(), "markdown", color))
    print(colorize(report.html(), "html", color), end="")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
