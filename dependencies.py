from fastapi import Request

from chat.engine import ChatEngine


def get_engine(request: Request) -> ChatEngine:
    return request.app.state.engine


def get_backend(request: Request):
    return request.app.state.backend
