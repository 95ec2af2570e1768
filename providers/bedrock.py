"""
Amazon Bedrock client.
Runs Anthropic models through invoke_model / invoke_model_with_response_stream.
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config import aws_config
from providers.base import ChatRequest, ChatResponse, ProviderClient, ProviderError

logger = logging.getLogger(__name__)

_RETRYABLE_CODES = {
    "ThrottlingException", "ServiceUnavailableException", "ModelNotReadyException",
    "InternalServerException", "ModelTimeoutException",
}


class BedrockClient(ProviderClient):

    def __init__(self, backend_id: str = "bedrock", region: Optional[str] = None,
                 model_ids: Optional[Dict[str, str]] = None, client: Any = None):
        self.id = backend_id
        self.region = region or aws_config.region
        # Router model names -> Bedrock model identifiers
        self.model_ids = dict(model_ids or {})
        self.client = client or self._create_client()

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}
            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token
            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")
        except NoCredentialsError:
            raise ProviderError("AWS credentials not configured.", retryable=False)
        except BotoCoreError as e:
            raise ProviderError(f"Failed to initialize Bedrock client: {e}", retryable=False)

    def _model_identifier(self, model: str) -> str:
        return self.model_ids.get(model, model)

    def _format_request_body(self, request: ChatRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        system_parts = [request.system_prompt] if request.system_prompt else []
        for msg in request.messages:
            if msg["role"] == "system":
                system_parts.append(msg.get("content") or "")
                continue
            # The API requires non-empty content
            messages.append({"role": msg["role"], "content": msg.get("content") or "(no content)"})
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        return body

    def _raise_client_error(self, e: ClientError) -> None:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_message = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"Bedrock API error: {error_code} - {error_message}")
        if error_code in ("ExpiredTokenException", "InvalidSignatureException"):
            raise ProviderError("AWS credentials expired. Please refresh.", retryable=False)
        raise ProviderError(f"Bedrock API error: {error_message}",
                            retryable=error_code in _RETRYABLE_CODES)

    def chat(self, request: ChatRequest) -> ChatResponse:
        model_identifier = self._model_identifier(request.model)
        logger.info(f"Invoking model: {model_identifier}")
        try:
            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(self._format_request_body(request)),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            self._raise_client_error(e)
        except BotoCoreError as e:
            raise ProviderError(f"Bedrock request failed: {e}")

        content = "".join(
            block.get("text", "") for block in response_body.get("content", [])
            if block.get("type") == "text"
        )
        usage = response_body.get("usage", {})
        return ChatResponse(
            content=content,
            model=request.model,
            provider=self.id,
            usage={
                "prompt_tokens": int(usage.get("input_tokens", 0)),
                "completion_tokens": int(usage.get("output_tokens", 0)),
            },
            finish_reason=response_body.get("stop_reason"),
        )

    def stream(self, request: ChatRequest) -> Iterator[Dict[str, Any]]:
        model_identifier = self._model_identifier(request.model)
        logger.info(f"Streaming from model: {model_identifier}")
        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(self._format_request_body(request)),
                contentType="application/json",
                accept="application/json",
            )
            input_tokens = 0
            for event in response["body"]:
                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")
                if event_type == "message_start":
                    input_tokens = int(chunk.get("message", {}).get("usage", {}).get("input_tokens", 0))
                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield {"type": "text", "content": delta["text"]}
                elif event_type == "message_delta":
                    yield {"type": "usage", "usage": {
                        "prompt_tokens": input_tokens,
                        "completion_tokens": int(chunk.get("usage", {}).get("output_tokens", 0)),
                    }}
        except ClientError as e:
            self._raise_client_error(e)
        except BotoCoreError as e:
            raise ProviderError(f"Bedrock streaming failed: {e}")
