"""Property-based tests for the path grammar and tile endpoint using Hypothesis."""

import pytest
from fastapi.testclient import TestClient
from hypothesis import given, settings
from hypothesis import strategies as st

from pmtiles_proxy.main import create_app
from pmtiles_proxy.routing import (
    NAME_CHARACTERS,
    InvalidPath,
    MetadataRequest,
    TileRequest,
    parse_path,
)
from tests.conftest import MemorySourceFactory, default_archives, make_settings

name_strategy = st.text(alphabet=sorted(NAME_CHARACTERS), min_size=1, max_size=40)
coordinate_strategy = st.integers(min_value=0, max_value=(1 << 20))
extension_strategy = st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=5)


@pytest.fixture(scope="module")
def property_client():
    """
    TestClient shared across hypothesis examples.

    Module-scoped because hypothesis does not reset function-scoped fixtures
    between examples.
    """
    app = create_app(
        settings=make_settings(), source_factory=MemorySourceFactory(default_archives())
    )
    with TestClient(app) as test_client:
        yield test_client


@given(
    name=name_strategy,
    z=coordinate_strategy,
    x=coordinate_strategy,
    y=coordinate_strategy,
    ext=extension_strategy,
)
@settings(max_examples=200, deadline=None)
def test_tile_paths_recover_their_components(name, z, x, y, ext):
    """
    Any name from the allowed alphabet, including names containing "/",
    is recovered exactly from a tile path.
    """
    parsed = parse_path(f"/{name}/{z}/{x}/{y}.{ext}")
    assert parsed == TileRequest(name, z, x, y, ext)


@given(name=name_strategy)
@settings(max_examples=200, deadline=None)
def test_metadata_paths_recover_the_name(name):
    parsed = parse_path(f"/{name}.json")
    if isinstance(parsed, TileRequest):
        # Names ending in "/<z>/<x>/<y>" form a valid tile path first
        assert parsed.ext == "json"
    else:
        assert parsed == MetadataRequest(name)


@given(path=st.text(max_size=60))
@settings(max_examples=300, deadline=None)
def test_parse_path_is_total(path):
    """Every input yields exactly one of the three outcomes and never raises."""
    parsed = parse_path(path)
    assert isinstance(parsed, (TileRequest, MetadataRequest, InvalidPath))
    if isinstance(parsed, InvalidPath):
        assert parsed.path == path


@given(
    name=st.text(alphabet=" %#?&<>\\\"\t", min_size=1, max_size=5),
    z=st.integers(min_value=0, max_value=4),
)
@settings(max_examples=50, deadline=None)
def test_names_outside_alphabet_are_invalid(name, z):
    assert isinstance(parse_path(f"/{name}/{z}/0/0.mvt"), InvalidPath)


@given(
    archive=st.sampled_from(["roads", "basemaps/roads"]),
    z=st.integers(min_value=0, max_value=4),
    x=st.integers(min_value=0, max_value=(1 << 4) - 1),
    y=st.integers(min_value=0, max_value=(1 << 4) - 1),
    ext=st.sampled_from(["mvt", "pbf"]),
)
@settings(max_examples=50, deadline=None)
def test_get_tile_property(property_client, archive, z, x, y, ext):
    """
    Valid tile requests either return a tile, report it absent or fall outside
    the grid, but never cause a server error.
    """
    response = property_client.get(f"/{archive}/{z}/{x}/{y}.{ext}")

    max_coord = (1 << z) - 1
    if x > max_coord or y > max_coord:
        assert response.status_code == 404
    else:
        assert response.status_code in [200, 204]


@given(
    z=st.integers(min_value=5, max_value=30),
    x=st.integers(min_value=0, max_value=(1 << 10)),
    y=st.integers(min_value=0, max_value=(1 << 10)),
)
@settings(max_examples=30, deadline=None)
def test_zoom_outside_archive_range_is_empty_404(property_client, z, x, y):
    response = property_client.get(f"/roads/{z}/{x}/{y}.mvt")
    assert response.status_code == 404
    assert response.content == b""
