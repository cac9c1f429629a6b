from transcript_pipeline import __version__
from transcript_pipeline.media_identifier import identify
from transcript_pipeline.orchestrator import ContentAcquisitionOrchestrator


def test_version_is_set() -> None:
    assert __version__


def test_identify_is_deterministic() -> None:
    assert identify("https://youtu.be/dQw4w9WgXcQ") == identify("youtube.com/watch?v=dQw4w9WgXcQ")


def test_orchestrator_is_importable() -> None:
    assert ContentAcquisitionOrchestrator.from_config
