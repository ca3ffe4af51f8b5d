from backend.render_harness import run
from tests.conftest import FakeResponse, make_members


class OrderSession:
    def __init__(self, response):
        self.response = response
        self.urls = []

    def get(self, url, timeout=None, cookies=None, headers=None, stream=False):
        self.urls.append(url)
        return self.response


def order_response(count=3, photos=None):
    return FakeResponse(
        200,
        {
            "id": "order-9",
            "gridTemplate": "square",
            "members": make_members(count, photos),
            "settings": {"gapPx": 0},
        },
    )


def test_renders_every_variant(tmp_path, capsys):
    session = OrderSession(order_response(3))
    code = run(
        ["order-9", "--api-base", "http://api.test/api", "--token", "t", "--out", str(tmp_path)],
        session=session,
    )

    assert code == 0
    written = sorted(path.name for path in tmp_path.iterdir())
    assert written == ["order-9-variant-m1.png", "order-9-variant-m2.png", "order-9-variant-m3.png"]
    assert (tmp_path / "order-9-variant-m1.png").read_bytes().startswith(b"\x89PNG")
    assert "Rendered 3/3 variants" in capsys.readouterr().out
    assert all(url.endswith("/render/order/order-9?token=t") for url in session.urls)


def test_single_variant_and_unknown_variant(tmp_path):
    session = OrderSession(order_response(3))
    args = ["order-9", "--api-base", "http://api.test/api", "--out", str(tmp_path)]

    assert run(args + ["--variant", "variant-m2"], session=session) == 0
    assert [path.name for path in tmp_path.iterdir()] == ["order-9-variant-m2.png"]
    assert run(args + ["--variant", "variant-q"], session=session) == 1


def test_bootstrap_failure_exits_non_zero(tmp_path, capsys):
    session = OrderSession(FakeResponse(500, None, "boom"))
    assert run(["order-9", "--out", str(tmp_path)], session=session) == 1
    assert "Order fetch failed: 500 - boom" in capsys.readouterr().err
