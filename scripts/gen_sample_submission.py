#!/usr/bin/env python3
"""Generate a synthetic RMA submission workbook for manual runs.

Layout mirrors what customers actually send:
- a company banner and a blank row above the header
- IMEIs stored as numbers (rendered by the General format as 3.51454E+14),
  as text, with a dropped trailing digit, and a few plain-invalid values
- "$1,234.00" style prices next to plain numbers

    python scripts/gen_sample_submission.py --devices 200 --output data/sample.xlsx
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd
from openpyxl.utils import get_column_letter

HEADERS = ["IMEI Number", "Device Model", "Capacity", "Grade", "Problem", "Category", "Repair/Return", "Unit Price"]
MODELS = ["iPhone 13", "iPhone 14 Pro", "Galaxy S22", "Pixel 7", "iPhone 12 mini"]
STORAGES = ["64GB", "128GB", "256GB", "512GB"]
GRADES = ["A", "B", "C", "D"]
ISSUES = ["Cracked screen", "Battery swelling", "No power", "Face ID failure", "Speaker crackle"]
CATEGORIES = ["Display", "Battery", "Board", "Biometrics", "Audio"]
ACTIONS = ["Repair", "Return"]


def random_imeis(n: int, rng: np.random.Generator) -> list[str]:
    """15-digit identifiers starting with 35."""
    body = rng.integers(0, 10, size=(n, 13))
    return ["35" + "".join(str(d) for d in row) for row in body]


def build_frame(n: int, seed: int = 42) -> tuple[pd.DataFrame, list[int]]:
    """Device table plus the row positions whose IMEI is stored as a number."""
    rng = np.random.default_rng(seed)
    imeis: list[object] = list(random_imeis(n, rng))
    numeric_rows: list[int] = []
    for i in range(n):
        kind = rng.choice(["number", "text", "short", "invalid"], p=[0.6, 0.25, 0.1, 0.05])
        if kind == "number":
            imeis[i] = int(imeis[i])  # type: ignore[arg-type]
            numeric_rows.append(i)
        elif kind == "short":
            imeis[i] = str(imeis[i])[:14]
        elif kind == "invalid":
            imeis[i] = "99" + str(imeis[i])[2:12]
    prices = np.round(rng.uniform(50, 1200, n), 2)
    df = pd.DataFrame(
        {
            HEADERS[0]: imeis,
            HEADERS[1]: rng.choice(MODELS, n),
            HEADERS[2]: rng.choice(STORAGES, n),
            HEADERS[3]: rng.choice(GRADES, n),
            HEADERS[4]: rng.choice(ISSUES, n),
            HEADERS[5]: rng.choice(CATEGORIES, n),
            HEADERS[6]: rng.choice(ACTIONS, n),
            HEADERS[7]: [f"${p:,.2f}" if i % 3 == 0 else float(p) for i, p in enumerate(prices)],
        }
    )
    return df, numeric_rows


def write_workbook(df: pd.DataFrame, numeric_rows: list[int], output: Path, company: str) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    header_row = 3  # 1-based; row 1 banner, row 2 blank
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Devices", index=False, startrow=header_row - 1)
        ws = writer.sheets["Devices"]
        ws["A1"] = f"{company} - RMA Request"
        imei_col = get_column_letter(1)
        for i in numeric_rows:
            # General 書式: 15 桁は指数表記で表示される
            ws[f"{imei_col}{header_row + 1 + i}"].number_format = "General"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--devices", type=int, default=100, help="Number of device rows")
    p.add_argument("--output", type=Path, default=Path("data/sample_submission.xlsx"))
    p.add_argument("--company", default="Acme Mobile Ltd")
    p.add_argument("--seed", type=int, default=42)
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.devices <= 0:
        print("--devices must be positive", file=sys.stderr)
        return 1
    df, numeric_rows = build_frame(args.devices, args.seed)
    write_workbook(df, numeric_rows, args.output, args.company)
    print(f"wrote {args.output} devices={args.devices} numeric_imeis={len(numeric_rows)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
