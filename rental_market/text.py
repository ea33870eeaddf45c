from __future__ import annotations

from typing import Any, Optional

import bleach


def clean_text(value: Any, max_length: int = 500) -> Optional[str]:
    """Strip markup from user-supplied free text; None when nothing is left."""
    if value is None:
        return None
    sanitized = bleach.clean(str(value), tags=[], strip=True).strip()
    return sanitized[:max_length] or None
