from __future__ import annotations

import io


def count_pages(data: bytes) -> int:
    import pikepdf

    try:
        with pikepdf.open(io.BytesIO(data)) as pdf:
            return len(pdf.pages)
    except pikepdf.PdfError as exc:
        raise ValueError(f"Repaired PDF cannot be opened: {exc}") from exc
