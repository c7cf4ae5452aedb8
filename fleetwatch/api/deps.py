from fastapi import Request

from fleetwatch.services.source import SqlTelemetrySource
from fleetwatch.services.usage import UsageAggregator


def get_source(request: Request) -> SqlTelemetrySource:
    return request.app.state.source


def get_usage(request: Request) -> UsageAggregator:
    return request.app.state.usage
