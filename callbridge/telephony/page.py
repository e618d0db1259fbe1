"""
The subset of a Playwright ``Page`` the telephony layer relies on.

Any object with these coroutine methods can drive the detector and stream
handler, which keeps the browser automation library out of the core package.
"""

from typing import Any, Optional, Protocol


class ElementHandle(Protocol):
    async def click(self) -> None: ...

    async def is_visible(self) -> bool: ...


class Keyboard(Protocol):
    async def press(self, key: str) -> None: ...


class Mouse(Protocol):
    async def click(self, x: float, y: float) -> None: ...


class Page(Protocol):
    keyboard: Keyboard
    mouse: Mouse

    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    async def query_selector(self, selector: str) -> Optional[ElementHandle]: ...

    async def reload(self, timeout: Optional[float] = None) -> Any: ...

    async def screenshot(self, path: Optional[str] = None) -> bytes: ...

