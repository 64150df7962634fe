"""Builders and fakes shared by the unit and integration tests."""

import base64
import json
from io import BytesIO

from PIL import Image, ImageDraw

from src.models import Payout
from src.bannerlease.errors import RenderError

OWNER_WALLET = "0x2222222222222222222222222222222222222222"
ADVERTISER_WALLET = "0x3333333333333333333333333333333333333333"


def split_image(width: int, height: int, left: str = "black", right: str = "white") -> Image.Image:
    """Image whose left and right halves are two flat colors."""
    image = Image.new("RGB", (width, height), right)
    ImageDraw.Draw(image).rectangle((0, 0, width // 2 - 1, height - 1), fill=left)
    return image


def png_bytes(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def data_url(image: Image.Image) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(image)).decode()


def profile_snapshot(banner: Image.Image, width: int = 1000, height: int = 1000) -> bytes:
    """Rendered profile page whose top fifth shows the given banner."""
    page = Image.new("RGB", (width, height), "gray")
    page.paste(banner.resize((width, height // 5)), (0, 0))
    return png_bytes(page)


def payment_header(signature: str = "0x" + "ab" * 32, payer: str = ADVERTISER_WALLET) -> str:
    payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": "base-sepolia",
        "payload": {"signature": signature, "authorization": {"from": payer}},
    }
    return base64.b64encode(json.dumps(payload).encode()).decode()


class FakeRenderer:
    """Render gateway that returns a fixed snapshot or raises."""

    def __init__(self, snapshot: bytes = None, error: Exception = None):
        self.snapshot = snapshot
        self.error = error
        self.urls = []

    async def render(self, url: str) -> bytes:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.snapshot


class FailingRenderer(FakeRenderer):
    def __init__(self):
        super().__init__(error=RenderError("browser crashed"))


class FakeSender:
    """Value sender that records payouts instead of moving value."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[Payout] = []

    async def send(self, payout: Payout) -> str:
        if self.fail:
            raise ConnectionError("settlement service unreachable")
        self.sent.append(payout)
        return f"0xtx{len(self.sent):04d}"


class Clock:
    """Manually advanced clock for the verification runner."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta
