from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from codemend.llm.generative import GenerationContext
    from codemend.models import Issue

SYSTEM_PROMPT = (
    "You repair defects in source code. Answer with the corrected version of the code you are given, "
    "in a single fenced code block, followed by one line of the form 'Confidence: <0.0-1.0>'. "
    "Change only what the defect requires and keep the existing style."
)

_CONFIDENCE_RE = re.compile(r"^\s*confidence\s*[:=]\s*([01](?:\.\d+)?|\.\d+)\s*$", re.IGNORECASE | re.MULTILINE)


def build_fix_prompt(issue: "Issue", context: "GenerationContext") -> str:
    return f"""Fix the following defect. Return the complete replacement for lines {context.start_line}-{context.end_line} of the file.

**File:** {context.file_path}
**Lines:** {issue.line}-{issue.end_line or issue.line}
**Rule ID:** {issue.rule_id}
**Severity:** {issue.severity.value}
**Message:** {issue.message}

**Offending code:**
```{context.language}
{issue.snippet.rstrip()}
```

**Code to rewrite (lines {context.start_line}-{context.end_line}):**
```{context.language}
{context.window.rstrip()}
```
"""


def parse_confidence(response: str) -> Optional[float]:
    match = _CONFIDENCE_RE.search(response)
    if not match:
        return None
    value = float(match.group(1))
    return value if 0.0 <= value <= 1.0 else None
