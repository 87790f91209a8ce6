"""SignNow e-signature provider."""

from .adapter import SignNowAdapter, interpret_status
from .client import AccessToken, RetryPolicy, SignNowClient, SignNowCredentials, get_base_url

__all__ = [
    "AccessToken",
    "RetryPolicy",
    "SignNowAdapter",
    "SignNowClient",
    "SignNowCredentials",
    "get_base_url",
    "interpret_status",
]
