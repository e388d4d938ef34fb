from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from portal_order_agent import cli


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    # main() reconfigures the root logger; keep pytest's handlers in place.
    monkeypatch.setattr(cli, "configure_logging", lambda *a, **k: None)
    for name in ("LABCORP_USERNAME", "LABCORP_PASSWORD", "QUEST_USERNAME", "QUEST_PASSWORD", "STATE_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def _env_file(tmp_path: Path) -> list[str]:
    return ["--env-file", str(tmp_path / "missing.env")]


_ORDER_YAML = """
correlation_id: ORD-7
portal: LabCorp
patient:
  first_name: Jane
  last_name: Doe
  date_of_birth: 12/26/1985
  sex: F
  address:
    line1: 1 Main St
    city: Salt Lake City
    state: UT
    zip_code: "84101"
  medicaid_id: "0123456789"
tests: ["005009", {code: "322000", name: "Comprehensive Metabolic Panel"}]
diagnosis_codes: [z00.00]
provider:
  name: Dr. Alice Smith
  npi: "1234567890"
collection_date: 5/1/2024
"""


def test_load_order_file_accepts_us_dates_and_bare_test_codes(tmp_path: Path) -> None:
    p = tmp_path / "order.yaml"
    p.write_text(_ORDER_YAML, encoding="utf-8")

    order = cli.load_order_file(str(p))

    assert order.portal == "labcorp"
    assert order.patient.date_of_birth == date(1985, 12, 26)
    assert order.collection_date == date(2024, 5, 1)
    assert [t.code for t in order.tests] == ["005009", "322000"]
    assert order.tests[1].name == "Comprehensive Metabolic Panel"
    assert order.diagnosis_codes == ("Z00.00",)


def test_load_order_file_rejects_missing_and_non_mapping_files(tmp_path: Path) -> None:
    with pytest.raises(SystemExit, match="File not found"):
        cli.load_order_file(str(tmp_path / "nope.yaml"))

    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SystemExit, match="must contain a mapping"):
        cli.load_order_file(str(p))


def test_list_portals(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(_env_file(tmp_path) + ["list-portals"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [line.split("\t")[0] for line in lines] == ["labcorp", "quest"]


def test_extract_confirmation(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    page = tmp_path / "success.txt"
    page.write_text("Thank you.\nRequisition #: L7731029\n", encoding="utf-8")
    assert cli.main(_env_file(tmp_path) + ["extract-confirmation", "--file", str(page)]) == 0
    assert capsys.readouterr().out.strip() == "L7731029"

    page.write_text("Order submitted", encoding="utf-8")
    assert cli.main(_env_file(tmp_path) + ["extract-confirmation", "--file", str(page)]) == 1


def test_enqueue_then_list_orders(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        f"state:\n  db_path: {tmp_path / 'state.db'}\nlogging:\n  file_path: {tmp_path / 'agent.log'}\n",
        encoding="utf-8",
    )
    order = tmp_path / "order.yaml"
    order.write_text(_ORDER_YAML, encoding="utf-8")
    base = _env_file(tmp_path)

    assert cli.main(base + ["enqueue", "--config", str(cfg), "--order", str(order)]) == 0
    with pytest.raises(SystemExit, match="ORD-7"):
        cli.main(base + ["enqueue", "--config", str(cfg), "--order", str(order)])

    capsys.readouterr()
    assert cli.main(base + ["list-orders", "--config", str(cfg), "--status", "pending"]) == 0
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert out[0].split("\t")[:3] == ["ORD-7", "labcorp", "pending"]


def test_enqueue_rejects_unconfigured_portal(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text(f"state:\n  db_path: {tmp_path / 'state.db'}\n", encoding="utf-8")
    order = tmp_path / "order.yaml"
    order.write_text(_ORDER_YAML.replace("portal: LabCorp", "portal: acme"), encoding="utf-8")

    with pytest.raises(KeyError, match="Unknown portal"):
        cli.main(_env_file(tmp_path) + ["enqueue", "--config", str(cfg), "--order", str(order)])
