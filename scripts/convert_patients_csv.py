#!/usr/bin/env python3
"""
Convert the clinic's patient spreadsheet (CSV export) into the JSON list read by the runner.

Usage:
  python3 -m scripts.convert_patients_csv patients.csv
  python3 -m scripts.convert_patients_csv patients.csv custom.json "flavia manuela boeira"

The output name always gets a _DD_MM suffix with today's date.
"""

from __future__ import annotations

import csv
import json
import sys
from pathlib import Path

from agents.procedure_agent.records import convert_csv_rows, dated_output_name

DEFAULT_PROFESSIONAL = "flavia manuela boeira"


def main(argv: list[str]) -> int:
    if not argv:
        print("Usage: convert_patients_csv.py <csv-file> [output-file] [professional-name]")
        return 1

    csv_path = Path(argv[0])
    if not csv_path.exists():
        print(f"CSV file not found: {csv_path}")
        return 1

    output_path = Path(dated_output_name(argv[1] if len(argv) > 1 else ""))
    professional = argv[2] if len(argv) > 2 else DEFAULT_PROFESSIONAL

    with csv_path.open(newline="", encoding="utf-8") as fh:
        rows = [{(k or "").strip(): (v or "") for k, v in row.items()} for row in csv.DictReader(fh)]
    patients = convert_csv_rows(rows, professional)

    output_path.write_text(json.dumps(patients, ensure_ascii=False, indent=2), encoding="utf-8")
    skipped = sum(1 for p in patients if p["skip"])
    print(f"Converted {len(patients)} patients -> {output_path}")
    print(f"Active: {len(patients) - skipped}, Skip flag: {skipped}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
