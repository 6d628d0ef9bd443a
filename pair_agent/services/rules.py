"""
Rule text - the behavioral guide attached to every request

Loaded once per process on first use and read-only afterwards. The rules
travel in the per-turn user content, never in the system role definition:
long behavioral rules in the role instruction make models noticeably less
willing to emit tool calls.
"""

from __future__ import annotations

import functools
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

PROJECT_RULE_FILES = (".pair_agent/rules.md", "AGENTS.md", "CLAUDE.md", "AI.md")

BUILTIN_RULES = """**Formatting Guidelines:**
- Always format code in markdown code blocks with a language tag
- Give a brief explanation before and after code
- Use bullet points for lists and step-by-step instructions
- Call out important warnings

**File Operations:**
Announce every file change with a directive line, then the code block:

create file `path/to/file.ext`
```language
full file content
```

modify `path/to/file.ext`
```language
<<<<<<< SEARCH
exact lines currently in the file
=======
replacement lines
>>>>>>> REPLACE
```

A modify block without SEARCH/REPLACE markers replaces the whole file, so
it must contain the COMPLETE new file. Never use placeholders such as
"# rest of file".

delete `path/to/file.ext`

Every change is shown to the user as a diff and applied only after they
confirm it."""


@functools.lru_cache(maxsize=None)
def get_rule_text(root: str | None = None) -> str:
    """Return the cached rule document for `root` (defaults to the working directory)"""
    base = Path(root) if root else Path.cwd()
    for name in PROJECT_RULE_FILES:
        path = base / name
        try:
            content = path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError):
            continue
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("project_rules_unreadable", path=str(path), error=str(e))
            continue
        if content.strip():
            logger.info("project_rules_loaded", path=str(path))
            return f"**Project Instructions (from {name}):**\n\n{content.strip()}\n\n{BUILTIN_RULES}"
    return BUILTIN_RULES
