import argparse, os, re, sys, hashlib, logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger("ivc")
logger.setLevel(logging.INFO)
if not logger.handlers:
    _stream = logging.StreamHandler(sys.stdout)
    _stream.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logger.addHandler(_stream)

DATE_FORMAT = "%d%b%Y"
DATE_PAT = re.compile(r"^\d{2}[A-Z][a-z]{2}\d{4}$")

FLOWER_KEY = "DateBlkTrtmnt"
SPECIMEN_LEFT_KEY = "Concat_DBT_sp_num"
SPECIMEN_RIGHT_KEY = "DG_Spec_ID_code"

DATE_COL = "Date"
BLOCK_COL = "Block"
TREATMENT_COL = "Treatment"
COUNT_TYPE_COL = "CountType"
COUNT_COL = "Count"
SNAPSHOT = "snapshot"

ID_COLS = ["Insect.type", "DG_Genus", "DG_species", "DG_Sex", "Genus_species"]
REQUIRED_COLS = [DATE_COL, BLOCK_COL, TREATMENT_COL, COUNT_TYPE_COL, COUNT_COL]

JOINED_FILES = {
    "insect_flower": "insect_flower_joined.csv",
    "insect_specimen": "insect_specimen_joined.csv",
    "all_data": "all_data_joined.csv",
}


class IvcError(Exception):
    pass

class SchemaError(IvcError):
    """Input table is missing columns or holds values of the wrong kind"""

class DateParseError(IvcError):
    """Date values that do not match ddMMMyyyy"""

    def __init__(self, bad: pd.Series):
        self.bad = bad
        preview = ", ".join(f"{idx}={val!r}" for idx, val in list(bad.items())[:10])
        more = f" (+{len(bad) - 10} more)" if len(bad) > 10 else ""
        super().__init__(f"{len(bad)} date value(s) do not match ddMMMyyyy: {preview}{more}")


def setup_file_logging(path: Optional[str]):
    if path:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = logging.FileHandler(path)
        fh.setLevel(logging.INFO)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        logger.addHandler(fh)

def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""): h.update(chunk)
    return h.hexdigest()

def write_csv(df: pd.DataFrame, path: str, index: bool = False) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_csv(path, index=index)
    logger.info(f"[save] {path} rows={len(df)} sha256={sha256_file(path)}")
    return path


# ---------------------------------------------------------------- loading

def load_table(path: str) -> pd.DataFrame:
    """Read a delimited or spreadsheet file; column types come from the file"""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input file not found: {path}")
    ext = os.path.splitext(path)[1].lower()
    try:
        if ext in (".xlsx", ".xlsm"):
            df = pd.read_excel(path, engine="openpyxl")
        elif ext == ".xls":
            df = pd.read_excel(path)
        else:
            df = pd.read_csv(path)
    except (ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise SchemaError(f"Could not parse {path}: {e}") from e
    logger.info(f"[load] {path}: {len(df)} rows x {df.shape[1]} cols")
    return df

def require_columns(df: pd.DataFrame, cols: Sequence[str], label: str):
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise SchemaError(f"{label} is missing required column(s): {missing}")

def load_tables(insects_path: str, flowers_path: str, specimens_path: str) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    insects = load_table(insects_path)
    flowers = load_table(flowers_path)
    specimens = load_table(specimens_path)
    require_columns(insects, [FLOWER_KEY, SPECIMEN_LEFT_KEY], "insect table")
    require_columns(flowers, [FLOWER_KEY], "flower table")
    require_columns(specimens, [SPECIMEN_RIGHT_KEY], "specimen table")
    return insects, flowers, specimens


# ---------------------------------------------------------------- joining

def left_join(left: pd.DataFrame, right: pd.DataFrame, on: Optional[str] = None,
              left_on: Optional[str] = None, right_on: Optional[str] = None,
              suffix: str = "_right", label: str = "join") -> pd.DataFrame:
    """Every left row kept; unmatched rows get null right-hand columns; exact key match only"""
    if on is not None:
        left_on = right_on = on
    if left_on is None or right_on is None:
        raise ValueError("left_join needs either 'on' or both 'left_on' and 'right_on'")
    require_columns(left, [left_on], f"{label} left table")
    require_columns(right, [right_on], f"{label} right table")

    lk, rk = left[left_on], right[right_on]
    if (pd.api.types.is_numeric_dtype(lk) != pd.api.types.is_numeric_dtype(rk)
            and lk.notna().any() and rk.notna().any()):
        raise SchemaError(
            f"{label}: key dtypes differ ({left_on}: {lk.dtype}, {right_on}: {rk.dtype}); keys are not coerced")

    merge_kwargs = dict(how="left", suffixes=("", suffix), indicator="_merge")
    if left_on == right_on:
        out = left.merge(right, on=left_on, **merge_kwargs)
    else:
        out = left.merge(right, left_on=left_on, right_on=right_on, **merge_kwargs)

    unmatched = int((out["_merge"] == "left_only").sum())
    out = out.drop(columns="_merge")
    logger.info(f"[join] {label}: left={len(left)} right={len(right)} out={len(out)} unmatched_left={unmatched}")
    return out


@dataclass
class JoinedTables:
    insect_flower: pd.DataFrame
    insect_specimen: pd.DataFrame
    all_data: pd.DataFrame

    def items(self):
        return [("insect_flower", self.insect_flower),
                ("insect_specimen", self.insect_specimen),
                ("all_data", self.all_data)]

def join_all(insects: pd.DataFrame, flowers: pd.DataFrame, specimens: pd.DataFrame) -> JoinedTables:
    insect_flower = left_join(insects, flowers, on=FLOWER_KEY, suffix="_flower", label="insect+flower")
    insect_specimen = left_join(insects, specimens, left_on=SPECIMEN_LEFT_KEY, right_on=SPECIMEN_RIGHT_KEY,
                                suffix="_specimen", label="insect+specimen")
    all_data = left_join(insect_flower, specimens, left_on=SPECIMEN_LEFT_KEY, right_on=SPECIMEN_RIGHT_KEY,
                         suffix="_specimen", label="insect+flower+specimen")
    return JoinedTables(insect_flower, insect_specimen, all_data)

def export_joined(joined: JoinedTables, outdir: str) -> Dict[str, str]:
    return {name: write_csv(df, os.path.join(outdir, JOINED_FILES[name])) for name, df in joined.items()}


# ---------------------------------------------------------------- cleaning

def parse_date_column(values: pd.Series, fmt: str = DATE_FORMAT) -> pd.Series:
    """Strict ddMMMyyyy parsing; any non-matching value aborts with DateParseError"""
    if pd.api.types.is_datetime64_any_dtype(values):
        if values.isna().any():
            raise DateParseError(values[values.isna()])
        return values
    text = values.map(lambda v: v.strip() if isinstance(v, str) else None)
    well_formed = text.map(lambda v: isinstance(v, str) and DATE_PAT.match(v) is not None).astype(bool)
    parsed = pd.to_datetime(text.where(well_formed, None), format=fmt, errors="coerce")
    bad = values[parsed.isna()]
    if len(bad):
        raise DateParseError(bad)
    return parsed

def format_date(ts, fmt: str = DATE_FORMAT) -> str:
    return pd.Timestamp(ts).strftime(fmt)


def select_columns(df: pd.DataFrame, id_cols: Sequence[str] = ID_COLS) -> pd.DataFrame:
    require_columns(df, REQUIRED_COLS, "insect+specimen table")
    ids = [c for c in id_cols if c in df.columns]
    return df[[DATE_COL, BLOCK_COL, TREATMENT_COL, COUNT_TYPE_COL] + ids + [COUNT_COL]].copy()

def drop_missing_response(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out[COUNT_COL] = pd.to_numeric(out[COUNT_COL], errors="coerce")
    out = out[out[COUNT_COL].notna()].copy()
    counts = out[COUNT_COL]
    if ((counts < 0) | (counts != counts.round())).any():
        raise SchemaError(f"{COUNT_COL} must hold non-negative integers")
    out[COUNT_COL] = counts.astype("int64")
    return out

def drop_snapshot_counts(df: pd.DataFrame) -> pd.DataFrame:
    return df[~(df[COUNT_TYPE_COL] == SNAPSHOT).fillna(False)].copy()

def parse_dates(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out[DATE_COL] = parse_date_column(out[DATE_COL])
    return out

def encode_factors(df: pd.DataFrame, cols: Sequence[str] = (BLOCK_COL, TREATMENT_COL)) -> pd.DataFrame:
    """Cast labels to categoricals with levels in sorted label order; missing labels raise SchemaError"""
    out = df.copy()
    for col in cols:
        missing = out.index[out[col].isna()]
        if len(missing):
            raise SchemaError(f"{col} is missing in {len(missing)} row(s): {list(missing[:10])}")
        labels = out[col].astype(str)
        out[col] = pd.Categorical(labels, categories=sorted(labels.unique()))
    return out


CLEANING_STEPS: List[Tuple[str, Callable[[pd.DataFrame], pd.DataFrame]]] = [
    ("select_columns", select_columns),
    ("drop_missing_response", drop_missing_response),
    ("drop_snapshot_counts", drop_snapshot_counts),
    ("parse_dates", parse_dates),
    ("encode_factors", encode_factors),
]

def run_cleaning(df: pd.DataFrame, steps=CLEANING_STEPS) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Apply the cleaning steps in order; returns (cleaned, audit)"""
    audit = []
    for name, step in steps:
        rows_in = len(df)
        df = step(df)
        audit.append({"step": name, "rows_in": rows_in, "rows_out": len(df), "dropped": rows_in - len(df)})
        logger.info(f"[clean] {name}: {rows_in} -> {len(df)} ({len(df) - rows_in:+d})")
    return df, pd.DataFrame(audit)


# ---------------------------------------------------------------- CLI

def cmd_join(args):
    insects, flowers, specimens = load_tables(args.insects, args.flowers, args.specimens)
    export_joined(join_all(insects, flowers, specimens), args.outdir)

def cmd_clean(args):
    insects, _, specimens = load_tables(args.insects, args.flowers, args.specimens)
    joined = left_join(insects, specimens, left_on=SPECIMEN_LEFT_KEY, right_on=SPECIMEN_RIGHT_KEY,
                       suffix="_specimen", label="insect+specimen")
    cleaned, audit = run_cleaning(joined)
    out = cleaned.copy()
    out[DATE_COL] = out[DATE_COL].map(format_date)
    write_csv(out, os.path.join(args.outdir, "model_input.csv"))
    write_csv(audit, os.path.join(args.outdir, "cleaning_audit.csv"))

def add_input_args(p):
    p.add_argument("--insects", required=True, help="insect counts (CSV)")
    p.add_argument("--flowers", required=True, help="flower counts (spreadsheet)")
    p.add_argument("--specimens", required=True, help="specimen identifications (spreadsheet)")
    p.add_argument("--outdir", required=True)

def main():
    p = argparse.ArgumentParser(description="Load, join and clean the insect / flower / specimen tables")
    p.add_argument("--log", default=None, help="log file path")
    sub = p.add_subparsers(dest="cmd", required=True)

    j = sub.add_parser("join", help="write the three left-joined tables")
    add_input_args(j)
    j.set_defaults(func=cmd_join)

    c = sub.add_parser("clean", help="write the cleaned model input and the cleaning audit")
    add_input_args(c)
    c.set_defaults(func=cmd_clean)

    args = p.parse_args()
    setup_file_logging(args.log)
    logger.info(f"[start] CMD={args.cmd} CWD={os.getcwd()}")
    args.func(args)

if __name__ == "__main__":
    main()
