"""
convostream - Request Builder

Turns conversation history plus generation parameters into a
GenerationRequest, enforcing request-level invariants before any
network I/O.
"""

import copy
from typing import Optional

from .config import ClientConfig, ModelSpec, resolve_model
from .errors import ValidationError
from .models import (
    Conversation,
    GenerationParams,
    GenerationRequest,
    TOOL_CHOICE_TYPES,
    validate_message,
    validate_turn_order,
)


class RequestBuilder:
    """
    Builds Messages API requests.

    Building has no side effects and may be retried.
    """

    def __init__(self, config: ClientConfig):
        self.config = config

    def build(self, conversation: Conversation, params: GenerationParams) -> GenerationRequest:
        """
        Build a request from a conversation and parameters.

        Args:
            conversation: Source of history and model. Not mutated.
            params: Generation parameters.

        Returns:
            GenerationRequest ready for encoding.

        Raises:
            ValidationError: Invalid content, bad turn order, tools with
                streaming, temperature with top_p, or max_tokens above
                the model's ceiling.
        """
        spec = self.resolve_spec(conversation.model or None)
        messages = conversation.messages

        for index, message in enumerate(messages):
            try:
                validate_message(message)
            except ValidationError as e:
                raise ValidationError(
                    f"invalid message {index} in conversation: {e.message}",
                    param=f"messages[{index}]",
                ) from e
        validate_turn_order(messages)

        self.check_params(params, spec)

        return GenerationRequest(
            model=spec.name,
            messages=copy.deepcopy(list(messages)),
            max_tokens=params.max_tokens if params.max_tokens is not None else spec.max_output_tokens,
            system=params.system,
            user_id=params.user_id,
            stop_sequences=list(params.stop_sequences) if params.stop_sequences else None,
            stream=params.stream,
            temperature=params.temperature,
            top_p=params.top_p,
            top_k=params.top_k,
            tool_choice=copy.deepcopy(params.tool_choice),
            tools=copy.deepcopy(params.tools),
        )

    def check_params(self, params: GenerationParams, spec: Optional[ModelSpec] = None) -> None:
        """Validate parameters on their own, without history."""
        spec = spec or self.config.model

        if params.tools and params.stream:
            raise ValidationError(
                "tool use is not supported while streaming",
                param="tools",
                code="tool_use_not_supported",
            )

        if params.temperature is not None and params.top_p is not None:
            raise ValidationError(
                "conflicting options: top_p and temperature cannot be used together",
                param="top_p",
                code="conflicting_options",
            )

        if params.max_tokens is not None:
            if params.max_tokens < 1:
                raise ValidationError(
                    f"max_tokens must be at least 1, got {params.max_tokens}",
                    param="max_tokens",
                )
            if params.max_tokens > spec.max_output_tokens:
                raise ValidationError(
                    f"max tokens exceeded for model {spec.name} "
                    f"(max tokens: {spec.max_output_tokens})",
                    param="max_tokens",
                    code="max_tokens_exceeded",
                )

        if params.tool_choice is not None:
            if params.tool_choice.type not in TOOL_CHOICE_TYPES:
                raise ValidationError(
                    f"invalid tool_choice type: {params.tool_choice.type!r}",
                    param="tool_choice.type",
                )
            if params.tool_choice.type == "tool" and not params.tool_choice.name:
                raise ValidationError(
                    "tool_choice of type 'tool' requires a tool name",
                    param="tool_choice.name",
                )

    def resolve_spec(self, model: Optional[str]) -> ModelSpec:
        """Resolve a model alias or name; None means the configured model."""
        if model is None:
            return self.config.model
        spec = resolve_model(model, self.config.models)
        if spec is None:
            raise ValidationError(f"invalid model: {model}", param="model")
        return spec
