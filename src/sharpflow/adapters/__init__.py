"""External capability adapters.

Classification and summarization go through the Anthropic SDK; task
execution capabilities go through an HTTP gateway. Every call carries an
explicit timeout and raises only SharpFlow faults.
"""

from sharpflow.adapters.base import call_with_timeout, parse_json_object, strip_code_fences
from sharpflow.adapters.classification import AnthropicClassificationAdapter, ClassificationAdapter
from sharpflow.adapters.execution import (
    Capabilities,
    HttpCapability,
    build_http_capabilities,
    create_http_client,
)
from sharpflow.adapters.summarization import AnthropicSummarizationAdapter, SummarizationAdapter

__all__ = [
    "AnthropicClassificationAdapter",
    "AnthropicSummarizationAdapter",
    "Capabilities",
    "ClassificationAdapter",
    "HttpCapability",
    "SummarizationAdapter",
    "build_http_capabilities",
    "call_with_timeout",
    "create_http_client",
    "parse_json_object",
    "strip_code_fences",
]
