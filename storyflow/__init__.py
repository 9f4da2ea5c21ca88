"""storyflow — interactive-fiction backend.

Named, schema-validated async flows run against an in-memory session store.
The narrative flows drive a text generator and an image generator through a
premise → opening → turns → ending lifecycle.
"""

# Re-export the public surface so `from storyflow import FlowRegistry` works.

from .extract import ParseFailure, parse_partial_json  # noqa: F401
from .flows import (  # noqa: F401
    FlowContext,
    FlowDefinition,
    FlowError,
    FlowRegistry,
    NotFound,
    ValidationFailure,
)
from .models import ChatMessage, FlowResponse, Session  # noqa: F401
from .sessions import SessionStore  # noqa: F401
