"""Test that the project setup is working correctly."""

import streampay_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert streampay_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from streampay_indexer import chain
    from streampay_indexer import gateway
    from streampay_indexer import indexer
    from streampay_indexer import storage

    # Just verify imports work
    assert chain is not None
    assert gateway is not None
    assert indexer is not None
    assert storage is not None
