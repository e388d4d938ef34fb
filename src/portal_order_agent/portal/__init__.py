from .auth import AuthenticationFlow
from .browser import BrowserSession
from .navigator import OrderNavigator
from .resolver import NOT_FOUND, ElementResolver

__all__ = [
    "AuthenticationFlow",
    "BrowserSession",
    "ElementResolver",
    "NOT_FOUND",
    "OrderNavigator",
]
