from __future__ import annotations

from fakes import FakeElement, FakePage
from portal_order_agent.portal.popups import PopupSweeper


def _self_removing(page: FakePage, **kw) -> FakeElement:
    return page.add(FakeElement(on_click=lambda el: page.remove(el), **kw))


def test_sweep_dismisses_banners_and_named_buttons() -> None:
    page = FakePage()
    _self_removing(page, selectors=("#onetrust-accept-btn-handler",))
    _self_removing(page, role="button", name="Got it")
    keep = page.button("Close Order")

    assert PopupSweeper(settle_ms=0).sweep(page) == 2
    assert keep.clicks == 0
    assert page.elements == [keep]


def test_sweep_is_a_no_op_without_popups() -> None:
    page = FakePage()
    page.button("Submit Order")
    assert PopupSweeper().sweep(page) == 0


def test_sweep_gives_up_after_max_iterations() -> None:
    page = FakePage()
    stubborn = page.button("OK")

    assert PopupSweeper(max_iterations=3, settle_ms=10).sweep(page) == 3
    assert stubborn.clicks == 3
    assert page.waited_ms == 30


def test_sweep_never_raises_when_a_click_fails() -> None:
    page = FakePage()
    broken = page.button("Dismiss")
    broken.click_errors = [RuntimeError("detached")]

    assert PopupSweeper().sweep(page) == 0


def test_sweep_leaves_close_buttons_of_data_entry_dialogs_alone() -> None:
    page = FakePage()
    form_close = page.button("Close", in_form=True)
    _self_removing(page, role="button", name="Got it")

    assert PopupSweeper(settle_ms=0).sweep(page) == 1
    assert form_close.clicks == 0
    assert page.elements == [form_close]
