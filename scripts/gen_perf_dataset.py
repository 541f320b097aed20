#!/usr/bin/env python3
"""Synthetic property CSV generator for performance and soak testing.

Generates a CSV in the same layout operators upload (Portuguese headers,
combined "lat, lng" coordinates) with a configurable share of duplicate rows
(same name as an earlier row) and invalid rows (blank owner or unparseable
coordinates). The output is suitable for ``property-import import``.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

CITIES = ["Curitiba", "Araucária", "Lapa", "Castro", "Palmeira", "Tijucas do Sul"]
TEAMS = ["Alpha", "Bravo", "Charlie", "Delta"]
ACTIVITIES = ["Agricultura", "Pecuária", "Silvicultura", "Apicultura"]
PREFIXES = ["Fazenda", "Sítio", "Chácara", "Estância"]


def generate_properties(
    rows: int,
    *,
    duplicate_ratio: float = 0.05,
    invalid_ratio: float = 0.02,
    seed: int = 42,
) -> pd.DataFrame:
    """Build a DataFrame of synthetic property rows.

    Args:
        rows: Number of data rows
        duplicate_ratio: Share of rows that repeat the name of an earlier row
        invalid_ratio: Share of rows with a blank owner or broken coordinates
        seed: Random seed for reproducible data
    """
    rng = np.random.default_rng(seed)
    names = [f"{PREFIXES[i % len(PREFIXES)]} Teste {i + 1:06d}" for i in range(rows)]

    # 重複行: 先行行の名前を再利用
    n_dup = int(rows * duplicate_ratio)
    if n_dup and rows > 1:
        dup_idx = rng.choice(np.arange(1, rows), size=min(n_dup, rows - 1), replace=False)
        for i in dup_idx:
            names[i] = names[int(rng.integers(0, i))]

    # 各行は約 1 km 以上離れるよう格子上に配置
    lat = -25.0 - (np.arange(rows) // 500) * 0.01 - rng.uniform(0, 0.001, rows)
    lng = -49.0 - (np.arange(rows) % 500) * 0.01 - rng.uniform(0, 0.001, rows)
    coords = [f"{a:.6f}, {b:.6f}" for a, b in zip(lat, lng)]
    owners = [f"Proprietário {i + 1}" for i in range(rows)]

    n_bad = int(rows * invalid_ratio)
    if n_bad:
        for k, i in enumerate(rng.choice(rows, size=min(n_bad, rows), replace=False)):
            if k % 2 == 0:
                owners[i] = ""
            else:
                coords[i] = "sem coordenadas"

    dates = pd.date_range("2024-01-01", "2024-12-31", periods=100)
    return pd.DataFrame(
        {
            "data": rng.choice(dates, rows).astype("datetime64[D]").astype(str),
            "nome": names,
            "coordenadas": coords,
            "cidade": rng.choice(CITIES, rows),
            "bairro": "Rural",
            "proprietario": owners,
            "telefone": [f"41{9_0000_0000 + i}" for i in range(rows)],
            "equipe": rng.choice(TEAMS, rows),
            "atividade": rng.choice(ACTIVITIES, rows),
            "cameras": rng.choice(["Sim", "Não"], rows),
            "moradores": rng.integers(0, 8, rows),
        }
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate synthetic property CSVs for performance testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s properties.csv --rows 500
  %(prog)s big.csv --rows 5000 --duplicate-ratio 0.1 --invalid-ratio 0.05 --sep ';'
        """,
    )
    parser.add_argument("output", type=Path, help="Output CSV path")
    parser.add_argument("--rows", type=int, default=500, help="Data rows (default: 500)")
    parser.add_argument("--duplicate-ratio", type=float, default=0.05)
    parser.add_argument("--invalid-ratio", type=float, default=0.02)
    parser.add_argument("--sep", default=",", choices=[",", ";"], help="Delimiter")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--dry-run", action="store_true", help="Show the plan only")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    for name in ("duplicate_ratio", "invalid_ratio"):
        if not 0 <= getattr(args, name) <= 1:
            print(f"Error: --{name.replace('_', '-')} must be within [0, 1]", file=sys.stderr)
            return 1

    print("Dataset generation plan:")
    print(f"  Output file: {args.output}")
    print(f"  Rows: {args.rows:,}")
    print(f"  Duplicates: ~{int(args.rows * args.duplicate_ratio):,}")
    print(f"  Invalid: ~{int(args.rows * args.invalid_ratio):,}")
    if args.dry_run:
        print("\n[DRY RUN] Would generate the file but not creating it.")
        return 0

    df = generate_properties(
        args.rows,
        duplicate_ratio=args.duplicate_ratio,
        invalid_ratio=args.invalid_ratio,
        seed=args.seed,
    )
    args.output.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(args.output, index=False, sep=args.sep, encoding="utf-8")
    print(f"Created CSV file: {args.output} ({len(df):,} rows)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
