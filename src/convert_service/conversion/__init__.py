"""
Domain layer for document conversion.
Provides interfaces (gateways), the per-request pipeline service and its
building blocks (workspaces, deadlines, admission, process supervision), so
front-ends (HTTP or others) can use the same core logic.
"""

from .errors import ConvertServiceError
from .interfaces import ConverterGateway, RemoteGateway, TelemetrySink, UpstreamResponse
from .models import ConversionRequest, ConversionResponse, build_request
from .service import ConversionService
