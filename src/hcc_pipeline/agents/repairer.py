"""CoherenceRepairer — one best-effort pass restoring missing commitments."""

from __future__ import annotations

import logging
from typing import Sequence

from ..errors import ProviderError
from ..models import BookSkeleton
from ..parsing import extract_block
from ..providers import CompletionProvider, CompletionRequest
from ..tools.coherence import commitment_key
from ..tools.text import clean_markdown, count_words

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are a coherence editor. A long document lost some of its core commitments \
during editing. You restore each missing commitment, worded as given, at the \
place in the document where it belongs. You do not remove or summarize any \
existing content.
"""

REPAIR_PROMPT = """\
MASTER THESIS:
{thesis}

MISSING COMMITMENTS (restore each one, keeping its wording):
{commitments}

DOCUMENT:
{output}

Return:
REPAIRED_OUTPUT:
[the complete document with the commitments restored]
"""


def _repair_tokens(output: str) -> int:
    # Room for the whole document plus the restored passages.
    return min(32000, max(4000, int(count_words(output) * 1.6) + 1000))


def repair_output(
    provider: CompletionProvider,
    output: str,
    missing: Sequence[str],
    skeleton: BookSkeleton,
) -> tuple[str, bool]:
    """Return ``(text, repaired)``.

    *repaired* is True only when every commitment in *missing* is traceable
    in the returned text; otherwise the original *output* comes back.
    Provider failures count as an unsuccessful repair.
    """
    if not missing:
        return output, True

    try:
        response = provider.complete(CompletionRequest(
            prompt=REPAIR_PROMPT.format(
                thesis=skeleton.master_thesis,
                commitments="\n".join(f"- {m}" for m in missing),
                output=output,
            ),
            system_instructions=SYSTEM_PROMPT,
            max_output_tokens=_repair_tokens(output),
            temperature=0.2,
        ))
    except ProviderError as e:
        logger.warning("Coherence repair call failed: %s", e)
        return output, False

    body = extract_block(response.text, "REPAIRED_OUTPUT")
    candidate = clean_markdown(body if body is not None else response.text)
    if not candidate:
        logger.warning("Coherence repair returned an empty document")
        return output, False

    lowered = candidate.lower()
    still_missing = [m for m in missing if commitment_key(m) not in lowered]
    if still_missing:
        logger.warning("Repair left %d of %d commitment(s) missing", len(still_missing), len(missing))
        return output, False
    logger.info("Repair restored %d commitment(s)", len(missing))
    return candidate, True
