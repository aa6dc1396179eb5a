from fastapi import Request


def get_components(request: Request):
    return request.app.state.components


def get_scheduler(request: Request):
    return request.app.state.components.scheduler
