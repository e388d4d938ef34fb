from __future__ import annotations

import zipfile
from pathlib import Path

from portal_order_agent.util.debug_bundle import create_audit_bundle


def test_create_audit_bundle_includes_screenshots_and_log(tmp_path: Path) -> None:
    audit = tmp_path / "audit" / "ORD-1"
    audit.mkdir(parents=True)
    (audit / "01_authenticated.png").write_bytes(b"png")
    (audit / "02_failed.png").write_bytes(b"png")

    log_file = tmp_path / "agent.log"
    log_file.write_text("hello", encoding="utf-8")

    out = create_audit_bundle(
        order_id="ORD-1",
        audit_root=str(tmp_path / "audit"),
        references=["ORD-1/01_authenticated.png", "ORD-1/02_failed.png", "ORD-1/03_missing.png"],
        log_file=str(log_file),
        out_dir=str(tmp_path),
    )
    assert out.exists()
    assert out.suffix == ".zip"
    assert "ORD-1" in out.name

    with zipfile.ZipFile(out, "r") as z:
        names = set(z.namelist())
        assert "agent.log" in names
        assert "audit/ORD-1/01_authenticated.png" in names
        assert "audit/ORD-1/02_failed.png" in names
        assert "audit/ORD-1/03_missing.png" not in names


def test_create_audit_bundle_never_includes_env_or_state(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("LABCORP_PASSWORD=x", encoding="utf-8")
    (tmp_path / "state.db").write_bytes(b"sqlite")

    out = create_audit_bundle(order_id="ORD-1", audit_root=str(tmp_path), references=[], out_dir=str(tmp_path / "out"))

    with zipfile.ZipFile(out, "r") as z:
        assert z.namelist() == []
