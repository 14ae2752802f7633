"""Bind explicitly constructed collaborators onto an app instance.

Routes declare ``config: Injected[Config]`` and ``make_app`` calls
``bind(app, Config, config)``; two apps in one process never share bindings.
"""
from __future__ import annotations

from typing import Annotated, Any, Callable, TypeVar

from fastapi import Depends, FastAPI

T = TypeVar("T")

_markers: dict[Any, Callable[[], Any]] = {}


def _marker(tp: Any) -> Callable[[], Any]:
    if tp not in _markers:

        def unbound() -> Any:
            raise LookupError(f"nothing bound for {tp!r}")

        _markers[tp] = unbound
    return _markers[tp]


class Injected:
    def __class_getitem__(cls, tp: Any) -> Any:
        return Annotated[tp, Depends(_marker(tp))]


def bind(app: FastAPI, tp: type[T], value: T) -> None:
    async def provide() -> Any:
        return value

    app.dependency_overrides[_marker(tp)] = provide
