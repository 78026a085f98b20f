"""Core primitives for printbridge."""

from .messages import (
    ResultEnvelope,
    ResultMessage,
    UnknownMessage,
    UploadProgress,
    decode_result_message,
    parse_json_object,
)
from .protocols import MessageHandler, Publisher, Transport
from .registry import CompositeSubscription, ListenerRegistry, Subscription
from .topics import TopicFamily, TopicRouter, is_valid_device_id, topic_matches, validate_device_id

__all__ = [
    "CompositeSubscription",
    "ListenerRegistry",
    "MessageHandler",
    "Publisher",
    "ResultEnvelope",
    "ResultMessage",
    "Subscription",
    "TopicFamily",
    "TopicRouter",
    "Transport",
    "UnknownMessage",
    "UploadProgress",
    "decode_result_message",
    "is_valid_device_id",
    "parse_json_object",
    "topic_matches",
    "validate_device_id",
]
