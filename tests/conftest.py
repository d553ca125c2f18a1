from __future__ import annotations

from itertools import product

import numpy as np
import pandas as pd
import pytest

from ivc_data import encode_factors

DATES = ["03Jun2024", "10Jun2024", "17Jun2024", "24Jun2024", "01Jul2024"]
BLOCKS = ["1", "2"]
TREATMENTS = ["Control", "Wildflower"]
INSECT_TYPES = ["Bee", "Fly"]


def make_counts(rng, blocks=BLOCKS, treatments=TREATMENTS, dates=DATES, reps=1, lam=10.0,
                effects=None, species=None) -> pd.DataFrame:
    """Cleaned-shape table of Poisson counts; effects maps treatment -> rate multiplier"""
    effects = effects or {}
    rows = []
    for blk, trt, dt in product(blocks, treatments, dates):
        for r in range(reps):
            sp = species[r % len(species)] if species else None
            rows.append({"Date": pd.to_datetime(dt, format="%d%b%Y"), "Block": blk, "Treatment": trt,
                         "CountType": "timed", "Insect.type": sp,
                         "Count": int(rng.poisson(lam * effects.get(trt, 1.0)))})
    return encode_factors(pd.DataFrame(rows))


@pytest.fixture()
def rng():
    return np.random.default_rng(20240601)


@pytest.fixture()
def counts(rng) -> pd.DataFrame:
    return make_counts(rng, blocks=["1", "2", "3"], treatments=["Control", "Grass", "Wildflower"],
                       reps=4, species=INSECT_TYPES)


@pytest.fixture()
def raw_tables():
    """Insect, flower and specimen tables shaped like the field spreadsheets"""
    insects = []
    n = 0
    for dt, blk, trt in product(DATES, BLOCKS, TREATMENTS):
        dbt = f"{dt}_{blk}_{trt}"
        for sp_num, (ctype, itype) in enumerate([("timed", "Bee"), ("timed", "Fly"), ("snapshot", "Bee")], 1):
            n += 1
            insects.append({"DateBlkTrtmnt": dbt, "Concat_DBT_sp_num": f"{dbt}_{sp_num}",
                            "Date": dt, "Block": int(blk), "Treatment": trt, "CountType": ctype,
                            "Insect.type": itype, "Count": (n * 7) % 13})
    insects = pd.DataFrame(insects)
    insects.loc[3, "Count"] = np.nan

    flowers = pd.DataFrame({
        "DateBlkTrtmnt": [f"{dt}_{blk}_{trt}" for dt, blk, trt in product(DATES, BLOCKS, TREATMENTS)][:-2],
        "FlowerCount": range(len(DATES) * len(BLOCKS) * len(TREATMENTS) - 2),
    })

    codes = insects["Concat_DBT_sp_num"].tolist()
    specimens = pd.DataFrame({
        "DG_Spec_ID_code": codes[::2],
        "DG_Genus": ["Bombus" if i % 2 else "Eristalis" for i in range(len(codes[::2]))],
        "DG_species": ["terrestris" if i % 2 else "tenax" for i in range(len(codes[::2]))],
        "DG_Sex": ["F"] * len(codes[::2]),
    })
    return insects, flowers, specimens


@pytest.fixture()
def input_files(tmp_path, raw_tables):
    insects, flowers, specimens = raw_tables
    paths = {
        "insects": tmp_path / "insects.csv",
        "flowers": tmp_path / "flowers.xlsx",
        "specimens": tmp_path / "specimens.xlsx",
    }
    insects.to_csv(paths["insects"], index=False)
    flowers.to_excel(paths["flowers"], index=False)
    specimens.to_excel(paths["specimens"], index=False)
    return {k: str(v) for k, v in paths.items()}
