from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from fundflow.errors import ConfigError, UpstreamServiceError
from fundflow.llm_provider import (
    BATCH_SAMPLING,
    EXTRACTION_SAMPLING,
    BedrockInferenceClient,
    MockInferenceClient,
    OpenAIInferenceClient,
    create_inference_client_from_env,
    text_block,
    user_message,
)
from fundflow.ocr import NoOpOcrClient, TextractOcrClient, create_ocr_client_from_env


def test_sampling_configs_render_converse_parameters():
    assert EXTRACTION_SAMPLING.as_converse() == {"maxTokens": 4096, "temperature": 0.0}
    assert BATCH_SAMPLING.as_converse() == {"maxTokens": 6000, "temperature": 0.1, "topP": 0.9}


def test_bedrock_client_sends_system_prompt_and_returns_text_segments():
    client = MagicMock()
    client.converse.return_value = {
        "output": {"message": {"content": [{"text": "{\"a\": 1}"}, {"toolUse": {}}, {"text": "tail"}]}},
        "usage": {"inputTokens": 10, "outputTokens": 5},
    }
    inference = BedrockInferenceClient(model_id="amazon.nova-pro-v1:0", client=client)
    messages = [user_message(text_block("extract"))]

    text = inference.generate(system_prompt="system", messages=messages, sampling=EXTRACTION_SAMPLING)

    assert text == "{\"a\": 1}"
    kwargs = client.converse.call_args.kwargs
    assert kwargs["modelId"] == "amazon.nova-pro-v1:0"
    assert kwargs["system"] == [{"text": "system"}]
    assert kwargs["messages"] == [{"role": "user", "content": [{"text": "extract"}]}]
    assert kwargs["inferenceConfig"] == {"maxTokens": 4096, "temperature": 0.0}


def test_bedrock_client_omits_system_when_absent_and_handles_empty_output():
    client = MagicMock()
    client.converse.return_value = {"output": {"message": {"content": []}}}
    inference = BedrockInferenceClient(model_id="m", client=client)

    assert inference.generate(system_prompt=None, messages=[], sampling=BATCH_SAMPLING) == ""
    assert "system" not in client.converse.call_args.kwargs


def test_bedrock_client_wraps_throttling_as_retryable():
    client = MagicMock()
    client.converse.side_effect = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "Converse")
    inference = BedrockInferenceClient(model_id="m", client=client)

    with pytest.raises(UpstreamServiceError) as exc_info:
        inference.generate_segments(system_prompt=None, messages=[], sampling=EXTRACTION_SAMPLING)
    assert exc_info.value.retryable is True
    assert exc_info.value.code == "BEDROCK_FAILED"


def test_openai_client_flattens_text_blocks():
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = "{}"
    client.chat.completions.create.return_value = response
    inference = OpenAIInferenceClient(model="gpt-4o-mini", client=client)

    text = inference.generate(
        system_prompt="system",
        messages=[user_message(text_block("a"), text_block("b"))],
        sampling=BATCH_SAMPLING,
    )

    assert text == "{}"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"] == [
        {"role": "system", "content": "system"},
        {"role": "user", "content": "a\nb"},
    ]
    assert kwargs["top_p"] == 0.9


def test_openai_client_rejects_document_blocks():
    inference = OpenAIInferenceClient(model="gpt-4o-mini", client=MagicMock())
    document = {"document": {"name": "pdf_1", "format": "pdf", "source": {"s3Location": {"uri": "s3://b/k"}}}}
    with pytest.raises(ConfigError):
        inference.generate(system_prompt=None, messages=[user_message(document)], sampling=BATCH_SAMPLING)


def test_mock_client_replays_queue_then_default():
    inference = MockInferenceClient(["first", ["a", "b"]], default="fallback")
    assert inference.generate(system_prompt=None, messages=[], sampling=EXTRACTION_SAMPLING) == "first"
    assert inference.generate_segments(system_prompt=None, messages=[], sampling=EXTRACTION_SAMPLING) == ["a", "b"]
    assert inference.generate(system_prompt=None, messages=[], sampling=EXTRACTION_SAMPLING) == "fallback"
    assert len(inference.calls) == 3


def test_inference_factory():
    assert isinstance(create_inference_client_from_env({"INFERENCE_PROVIDER": "mock"}), MockInferenceClient)
    with pytest.raises(ConfigError):
        create_inference_client_from_env({"INFERENCE_PROVIDER": "unknown"})


def test_textract_client_maps_blocks():
    client = MagicMock()
    client.detect_document_text.return_value = {
        "Blocks": [
            {"BlockType": "PAGE"},
            {"BlockType": "LINE", "Text": "Alt Fund I"},
            {"BlockType": "WORD", "Text": "Alt"},
        ]
    }
    blocks = TextractOcrClient(client=client).detect_text(b"%PDF")

    assert [(block.block_type, block.text) for block in blocks] == [
        ("PAGE", ""),
        ("LINE", "Alt Fund I"),
        ("WORD", "Alt"),
    ]
    client.detect_document_text.assert_called_once_with(Document={"Bytes": b"%PDF"})


def test_textract_client_wraps_client_errors():
    client = MagicMock()
    client.detect_document_text.side_effect = ClientError(
        {"Error": {"Code": "UnsupportedDocumentException", "Message": "bad pdf"}}, "DetectDocumentText"
    )
    with pytest.raises(UpstreamServiceError) as exc_info:
        TextractOcrClient(client=client).detect_text(b"x")
    assert exc_info.value.service == "textract"
    assert exc_info.value.retryable is False


def test_ocr_factory():
    assert isinstance(create_ocr_client_from_env({"OCR_PROVIDER": "noop"}), NoOpOcrClient)
    assert NoOpOcrClient().detect_text(b"x") == []
    with pytest.raises(ConfigError):
        create_ocr_client_from_env({"OCR_PROVIDER": "tesseract"})
