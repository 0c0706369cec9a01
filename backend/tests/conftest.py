"""
Pytest configuration for the EdgeForge test suite.
"""

import io
import sys
from pathlib import Path

import pytest
from PIL import Image

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from edgeforge.persistence import PersistenceManager  # noqa: E402
from edgeforge.settings import SettingsCache, SettingsService  # noqa: E402


# Configure pytest
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (thread timing, real worker pools)"
    )
    config.addinivalue_line(
        "markers", "integration: marks end-to-end pipeline tests"
    )


# =============================================================================
# Shared fixtures
# =============================================================================

@pytest.fixture
def persistence(tmp_path):
    """A fresh SQLite database per test."""
    return PersistenceManager(db_path=str(tmp_path / "edgeforge.db"))


@pytest.fixture
def settings_service(persistence):
    return SettingsService(persistence, SettingsCache(ttl_seconds=60))


@pytest.fixture
def site(persistence):
    return persistence.create_site("Example", "https://example.com", site_id="site-1")


def make_image_bytes(width: int = 800, height: int = 600, fmt: str = "JPEG", color=(200, 40, 40)) -> bytes:
    """Generate an image in memory."""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    image = Image.new(mode, (width, height), fill)
    # A gradient stripe so encoders have something to compress
    for x in range(0, width, 4):
        for y in range(0, min(height, 40)):
            image.putpixel((x, y), (x % 256, y % 256, 128) + ((255,) if mode == "RGBA" else ()))
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return make_image_bytes
