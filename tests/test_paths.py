import pytest

from reroute.paths import normalize


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/foo", "/foo"),
        ("/foo/", "/foo"),
        ("foo", "/foo"),
        ("foo/", "/foo"),
        ("/foo/bar/", "/foo/bar"),
        ("/foo//", "/foo"),
        ("/Foo", "/Foo"),
    ],
)
def test_normalize(path, expected):
    assert normalize(path) == expected


def test_trailing_slash_does_not_matter():
    assert normalize("/foo/") == normalize("/foo") == "/foo"


def test_root_has_one_canonical_form():
    assert normalize("/") == normalize("") == normalize("//") == "/"


def test_idempotent():
    for path in ("", "/", "a", "/a/", "/a/b//", "a/b"):
        assert normalize(normalize(path)) == normalize(path)
