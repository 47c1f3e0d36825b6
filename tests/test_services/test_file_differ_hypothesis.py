"""Property-based tests for file diff invariants."""

from __future__ import annotations

import string

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from backend.services.file_differ import FileRecord, diff

PROPERTY_SETTINGS = settings(
    max_examples=250,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_SEGMENT = st.text(alphabet=string.ascii_lowercase + string.digits, min_size=1, max_size=8)
_PATH = st.builds(
    lambda parts, ext: "/".join(parts) + f".{ext}",
    st.lists(_SEGMENT, min_size=1, max_size=3),
    st.sampled_from(["jpg", "png", "pdf", "css"]),
)
_HASH = st.text(alphabet="0123456789abcdef", min_size=1, max_size=16)
_HASH_MAP = st.dictionaries(keys=_PATH, values=_HASH, max_size=12)


def _to_records(hash_map: dict[str, str]) -> list[FileRecord]:
    return [
        FileRecord(relative_path=path, size=len(content_hash), content_hash=content_hash)
        for path, content_hash in hash_map.items()
    ]


class TestDiffProperties:
    @PROPERTY_SETTINGS
    @given(source=_HASH_MAP, local=_HASH_MAP)
    def test_source_paths_are_partitioned(
        self, source: dict[str, str], local: dict[str, str]
    ) -> None:
        plan = diff(_to_records(source), _to_records(local))
        downloads = {r.relative_path for r in plan.to_download}
        unchanged = {p for p, h in source.items() if local.get(p) == h}

        assert downloads.isdisjoint(unchanged)
        assert downloads | unchanged == set(source)
        assert plan.unchanged_count == len(unchanged)

    @PROPERTY_SETTINGS
    @given(source=_HASH_MAP, local=_HASH_MAP)
    def test_deletions_are_exactly_local_only_paths(
        self, source: dict[str, str], local: dict[str, str]
    ) -> None:
        plan = diff(_to_records(source), _to_records(local))
        assert {r.relative_path for r in plan.to_delete} == set(local) - set(source)

    @PROPERTY_SETTINGS
    @given(files=_HASH_MAP)
    def test_identical_trees_need_nothing(self, files: dict[str, str]) -> None:
        plan = diff(_to_records(files), _to_records(files))
        assert plan.to_download == []
        assert plan.to_delete == []
        assert plan.unchanged_count == len(files)

    @PROPERTY_SETTINGS
    @given(source=_HASH_MAP)
    def test_empty_local_downloads_everything_in_source_order(
        self, source: dict[str, str]
    ) -> None:
        records = _to_records(source)
        plan = diff(records, [])
        assert plan.to_download == records
