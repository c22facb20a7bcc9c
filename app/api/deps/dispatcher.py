"""Dispatcher dependency."""

from fastapi import Request

from workers.dispatcher import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher
