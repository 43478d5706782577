import pytest

from imageflow.domain.errors import UnsupportedOperationError, ValidationError
from imageflow.infrastructure.ai.operations import OPERATIONS, get_operation

DATA_URI = "data:image/jpeg;base64,AA"


def test_catalog_endpoints():
    assert {key: spec.endpoint for key, spec in OPERATIONS.items()} == {
        "seedream-edit": "fal-ai/bytedance/seedream/v4/edit",
        "flux-pro-kontext": "fal-ai/flux-pro/kontext",
        "nano-banana-edit": "fal-ai/nano-banana/edit",
        "topaz-upscale": "fal-ai/topaz/upscale/image",
    }
    assert [k for k, s in OPERATIONS.items() if not s.requires_prompt] == ["topaz-upscale"]


def test_seedream_keeps_caller_image_urls_and_extras():
    payload = get_operation("seedream-edit").build_input(
        {"prompt": "p", "image_urls": ["https://x/a.png"], "image_size": "square"}, DATA_URI
    )
    assert payload == {"prompt": "p", "image_urls": ["https://x/a.png"], "image_size": "square"}


def test_nano_banana_keeps_integer_seed():
    payload = get_operation("nano-banana-edit").build_input(
        {"prompt": "p", "seed": 42, "num_images": 2}, DATA_URI
    )
    assert payload == {"prompt": "p", "image_urls": [DATA_URI], "num_images": 2, "seed": 42}


def test_invalid_parameter_types_are_validation_errors():
    with pytest.raises(ValidationError):
        get_operation("nano-banana-edit").build_input({"prompt": "p", "num_images": "many"}, DATA_URI)


def test_unknown_operation():
    with pytest.raises(UnsupportedOperationError):
        get_operation("unknown-model")
