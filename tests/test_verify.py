from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from pdf_carve.verify import count_pages

pikepdf = pytest.importorskip("pikepdf")


def _blank_pdf(pages: int) -> bytes:
    pdf = pikepdf.new()
    for _ in range(pages):
        pdf.add_blank_page()
    stream = io.BytesIO()
    pdf.save(stream)
    return stream.getvalue()


def test_count_pages_of_repaired_buffer():
    assert count_pages(_blank_pdf(3)) == 3


def test_count_pages_rejects_garbage():
    with pytest.raises(ValueError, match="cannot be opened"):
        count_pages(b"%PDF-1.4 not really a pdf")
