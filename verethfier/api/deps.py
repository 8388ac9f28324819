"""FastAPI dependencies exposing the service graph built at startup."""

from __future__ import annotations

from fastapi import Request

from verethfier.verification.factory import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
