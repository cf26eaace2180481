from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Iterable


def entry_name(name: str) -> str:
    """Gateway attachments without an extension are zip archives."""

    return name if Path(name).suffix else f"{name}.zip"


def pack(target: Path, members: Iterable[tuple[str, bytes | Path]]) -> Path:
    """Write ``members`` (archive name, content or file) into ``target``."""

    target.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in members:
            if isinstance(content, Path):
                archive.write(content, arcname=name)
            else:
                archive.writestr(name, content)
    return target
