from __future__ import annotations

import re
import time
import zipfile
from pathlib import Path
from typing import Iterable


def create_audit_bundle(
    *,
    order_id: str,
    audit_root: str,
    references: Iterable[str],
    log_file: str = "",
    out_dir: str = "data",
) -> Path:
    """
    Create a shareable zip with one order's audit screenshots and the log file.

    Intentionally excludes secrets (.env, config.yaml, the state DB holding session blobs).
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    safe_id = re.sub(r"[^a-zA-Z0-9_-]+", "_", order_id).strip("_") or "order"
    out_path = out_root / f"audit_bundle_{safe_id}_{stamp}.zip"

    root = Path(audit_root)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except Exception:
            # best-effort; don't fail bundling because a file disappeared
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log_file:
            log = Path(log_file)
            _add_file(z, log, arcname=log.name)

        for ref in references:
            _add_file(z, root / ref, arcname=str(Path("audit") / ref))

    return out_path
