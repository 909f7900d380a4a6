"""Drug safety verification service: interaction and allergy checks for prescribing."""

__version__ = "0.1.0"


def create_app(settings=None, container=None):
    """Build the FastAPI app; imported lazily so models and services load without it."""
    from .main import create_app as _create_app
    return _create_app(settings, container)


__all__ = ["__version__", "create_app"]
