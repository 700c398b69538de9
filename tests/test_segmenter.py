import io

import pytest

from loreweave.errors import SegmentationError
from loreweave.segmenter import StreamSegmenter, iter_segments, overlap_tail, split_text


def _paragraphs(n: int, width: int = 50) -> str:
    return "\n\n".join(f"p{i:03d} " + "x" * (width - 5) for i in range(n))


class TestSplitText:
    def test_short_text_is_one_segment_unchanged(self):
        text = "Frodo is a hobbit.\n\nHe lives in the Shire.  "
        assert split_text(text, size=2000, overlap=200) == [text]

    def test_text_exactly_at_size_is_one_segment(self):
        text = "a" * 100
        assert split_text(text, size=100, overlap=10) == [text]

    def test_empty_text(self):
        assert split_text("", size=10, overlap=2) == [""]

    def test_whitespace_only_long_text_returned_verbatim(self):
        text = " \n\n \n\n" * 10
        assert split_text(text, size=10, overlap=2) == [text]

    def test_each_segment_starts_with_previous_tail(self):
        text = _paragraphs(30)
        segments = split_text(text, size=300, overlap=40)
        assert len(segments) > 1
        for prev, cur in zip(segments, segments[1:]):
            assert cur.startswith(overlap_tail(prev, 40))

    def test_segments_stay_within_size_when_paragraphs_fit(self):
        segments = split_text(_paragraphs(30), size=300, overlap=40)
        assert all(len(s) <= 300 for s in segments)

    def test_every_paragraph_is_kept(self):
        text = _paragraphs(25)
        joined = "\n\n".join(split_text(text, size=200, overlap=20))
        for i in range(25):
            assert f"p{i:03d} " in joined

    def test_oversized_paragraph_emitted_whole(self):
        big = "y" * 500
        text = f"intro\n\n{big}\n\noutro"
        segments = split_text(text, size=100, overlap=10)
        assert any(big in s for s in segments)

    @pytest.mark.parametrize("size,overlap", [(0, 0), (10, 10), (10, 20), (10, -1)])
    def test_rejects_bad_config(self, size, overlap):
        with pytest.raises(ValueError):
            split_text("abc", size=size, overlap=overlap)


class TestOverlapTail:
    def test_shorter_text_returned_whole(self):
        assert overlap_tail("abc", 10) == "abc"

    def test_tail(self):
        assert overlap_tail("abcdef", 2) == "ef"

    def test_zero(self):
        assert overlap_tail("abcdef", 0) == ""


class TestStreaming:
    def test_empty_stream_yields_nothing(self):
        assert list(iter_segments(io.StringIO(""), size=100, overlap=10)) == []

    def test_single_paragraph(self):
        out = list(iter_segments(io.StringIO("line one\nline two\n"), size=100, overlap=10))
        assert out == ["line one\nline two"]

    def test_matches_bulk_overlap_rule(self):
        text = _paragraphs(40)
        segments = list(iter_segments(io.StringIO(text), size=300, overlap=40))
        assert len(segments) > 1
        for prev, cur in zip(segments, segments[1:]):
            assert cur.startswith(overlap_tail(prev, 40))

    def test_triggering_paragraph_is_not_lost(self):
        sink: list[str] = []
        seg = StreamSegmenter(size=30, overlap=5)
        for line in ["a" * 20, "", "b" * 20, ""]:
            seg.feed(line, sink.append)
        seg.flush(sink.append)
        assert sink[0] == "a" * 20
        assert sink[1] == "a" * 5 + "\n\n" + "b" * 20

    def test_is_lazy(self):
        class Exploding(io.StringIO):
            def readline(self, size=-1):
                line = super().readline(size)
                if not line:
                    raise AssertionError("read past the point needed")
                return line

        text = _paragraphs(40) + "\n\n"
        gen = iter_segments(Exploding(text), size=300, overlap=40)
        first = next(gen)
        assert first.startswith("p000")

    def test_overlong_line_fails(self):
        stream = io.StringIO("short\n" + "z" * 50 + "\n")
        with pytest.raises(SegmentationError, match="line 2"):
            list(iter_segments(stream, size=100, overlap=10, max_line=20))

    def test_crlf_lines(self):
        out = list(iter_segments(io.StringIO("one\r\n\r\ntwo\r\n"), size=100, overlap=10))
        assert out == ["one\n\ntwo"]


class TestStreamingNormalisation:
    def test_short_input_is_rebuilt_not_verbatim(self):
        text = "Frodo is a hobbit.\n\n\n\nSam is too.\n"
        assert split_text(text, size=100, overlap=10) == [text]
        assert list(iter_segments(io.StringIO(text), size=100, overlap=10)) == [
            "Frodo is a hobbit.\n\nSam is too."
        ]

    def test_whitespace_only_yields_nothing(self):
        assert split_text("  \n\n ", size=100, overlap=10) == ["  \n\n "]
        assert list(iter_segments(io.StringIO("  \n\n \n"), size=100, overlap=10)) == []
