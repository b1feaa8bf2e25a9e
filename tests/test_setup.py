"""Test that the project setup is working correctly."""

import wallet_radar


def test_version() -> None:
    """Test that version is defined."""
    assert wallet_radar.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all subpackages can be imported."""
    from wallet_radar import costbasis, ingestion, service, storage

    assert costbasis is not None
    assert ingestion is not None
    assert service is not None
    assert storage is not None
