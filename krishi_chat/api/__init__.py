from .chat_rest_client import ChatRestClient

__all__ = ["ChatRestClient"]
