from __future__ import annotations

from replaytrace.context import PageContext, collect_device_info


def test_annotate_adds_page_fields_over_caller_data() -> None:
    page = PageContext(url="https://shop.example/cart?step=2#top", title="Cart")

    data = page.annotate({"x": 1, "url": "spoofed"})

    assert data == {"x": 1, "url": "https://shop.example/cart?step=2#top", "path": "/cart", "title": "Cart"}


def test_path_defaults_to_root() -> None:
    assert PageContext(url="https://shop.example").path == "/"
    assert PageContext().annotate(None) == {"url": "", "path": "/", "title": ""}


def test_device_info_uses_viewport_for_missing_screen() -> None:
    page = PageContext(url="https://shop.example/", referrer="https://search.example/")

    info = collect_device_info(page, viewport=(1280, 720))

    assert info.viewport_width == 1280
    assert info.screen_height == 720
    assert info.url == "https://shop.example/"
    assert info.referrer == "https://search.example/"
    assert info.user_agent.startswith("replaytrace-python/")
