from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence

import pandas as pd
from loguru import logger


def read_table(path: Path, sheet_name: Optional[str] = None, dtype: Optional[dict] = None) -> pd.DataFrame:
    ext = path.suffix.lower()
    if ext in {".csv", ".txt"}:
        return pd.read_csv(path, encoding="utf-8-sig", dtype=dtype)
    kwargs: dict[str, Any] = {"dtype": dtype}
    if sheet_name is not None:
        kwargs["sheet_name"] = sheet_name
    return pd.read_excel(path, **kwargs)


def clean_value(value: Any) -> Any:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def write_table(rows: Sequence[dict], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(list(rows))
    if path.suffix.lower() in {".csv", ".txt"}:
        df.to_csv(path, index=False, encoding="utf-8-sig")
    else:
        df.to_excel(path, index=False)
    logger.info("Resultados escritos en {}", path)
