import inspect
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI


class Lifecycle:
    """
    Collects startup/shutdown hooks and exposes them as a FastAPI lifespan,
    so services do not depend on the deprecated on_event/on_startup API.

        lifecycle = Lifecycle()
        app = FastAPI(lifespan=lifecycle.lifespan)

        @lifecycle.on_startup
        def _startup(): ...
    """

    def __init__(self) -> None:
        self._startup: list[Callable] = []
        self._shutdown: list[Callable] = []

    def on_startup(self, func: Callable) -> Callable:
        self._startup.append(func)
        return func

    def on_shutdown(self, func: Callable) -> Callable:
        self._shutdown.append(func)
        return func

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        for func in self._startup:
            await _call(func)
        try:
            yield
        finally:
            for func in reversed(self._shutdown):
                await _call(func)


async def _call(func: Callable) -> None:
    result = func()
    if inspect.isawaitable(result):
        await result
