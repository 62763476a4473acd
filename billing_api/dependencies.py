"""FastAPI dependencies."""

from fastapi import Request

from billing_api.runtime import BillingRuntime
from billing_services.admin import AdminOperations


def get_runtime(request: Request) -> BillingRuntime:
    return request.app.state.runtime


def get_admin(request: Request) -> AdminOperations:
    return request.app.state.runtime.admin
