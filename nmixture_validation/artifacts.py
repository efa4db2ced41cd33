"""
Run artifacts: synthetic datasets, posterior chains, summary tables and
per-replicate checkpoints, each saved and reloaded by identifier.
"""

from __future__ import annotations

import json
import os
import pickle
import time
from pathlib import Path

import arviz as az
import numpy as np
import pandas as pd

from .config import ModelVariant, ParameterSet, OUTPUT_DIR, SITE_ID
from .posterior import chains_to_inference_data, inference_data_to_chains
from .simulate import SimulatedDataset

_DATASET_TABLES = ('sites', 'visits', 'observed_sites', 'observed_visits', 'X_abund', 'X_det', 'X_occ')


class RunDirectory:
    """Timestamped output folder for one run, with one subfolder per artifact kind"""

    def __init__(self, base_dir=OUTPUT_DIR, run_id=None):
        self.run_id = run_id or f"run_{time.strftime('%Y%m%d_%H%M%S')}"
        self.path = Path(base_dir) / self.run_id
        self.datasets_dir = self.path / 'datasets'
        self.chains_dir = self.path / 'chains'
        self.tables_dir = self.path / 'tables'
        for directory in [self.path, self.datasets_dir, self.chains_dir, self.tables_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    # -- synthetic datasets ---------------------------------------------------

    def save_dataset(self, dataset: SimulatedDataset, identifier: str) -> Path:
        folder = self.datasets_dir / identifier
        folder.mkdir(parents=True, exist_ok=True)
        for name in _DATASET_TABLES:
            table = getattr(dataset, name)
            if table is not None:
                table.to_csv(folder / f"{name}.csv", index=False)
        meta = {
            'seed': int(dataset.seed),
            'family': dataset.variant.family,
            'zero_inflated': dataset.variant.zero_inflated,
            'beta': list(dataset.params.beta),
            'alpha': list(dataset.params.alpha),
            'delta': list(dataset.params.delta) if dataset.params.delta is not None else None,
            'phi': dataset.params.phi,
        }
        with open(folder / 'meta.json', 'w') as f:
            json.dump(meta, f, indent=2)
        return folder

    def load_dataset(self, identifier: str) -> SimulatedDataset:
        folder = self.datasets_dir / identifier
        if not folder.exists():
            raise FileNotFoundError(f"No dataset saved under {identifier!r} in {self.datasets_dir}")
        with open(folder / 'meta.json') as f:
            meta = json.load(f)
        tables = {}
        for name in _DATASET_TABLES:
            path = folder / f"{name}.csv"
            tables[name] = pd.read_csv(path) if path.exists() else None
        observed_sites, observed_visits = tables['observed_sites'], tables['observed_visits']
        site_index = pd.Index(observed_sites[SITE_ID]).get_indexer(observed_visits[SITE_ID])
        return SimulatedDataset(
            variant=ModelVariant(family=meta['family'], zero_inflated=meta['zero_inflated']),
            params=ParameterSet(beta=meta['beta'], alpha=meta['alpha'], delta=meta['delta'], phi=meta['phi']),
            seed=meta['seed'],
            site_index=site_index.astype(np.int64),
            **tables,
        )

    # -- posterior chains -----------------------------------------------------

    def save_chains(self, chains, identifier: str) -> Path:
        path = self.chains_dir / f"{identifier}.nc"
        chains_to_inference_data(chains).to_netcdf(str(path))
        return path

    def load_chains(self, identifier: str):
        path = self.chains_dir / f"{identifier}.nc"
        if not path.exists():
            raise FileNotFoundError(f"No chains saved under {identifier!r} in {self.chains_dir}")
        return inference_data_to_chains(az.from_netcdf(str(path)))

    # -- summary / replicate tables -------------------------------------------

    def save_table(self, table: pd.DataFrame, identifier: str, index: bool = True) -> Path:
        path = self.tables_dir / f"{identifier}.csv"
        table.to_csv(path, index=index)
        return path

    def load_table(self, identifier: str, index_col=0) -> pd.DataFrame:
        path = self.tables_dir / f"{identifier}.csv"
        if not path.exists():
            raise FileNotFoundError(f"No table saved under {identifier!r} in {self.tables_dir}")
        return pd.read_csv(path, index_col=index_col)

    def identifiers(self, kind: str = 'tables'):
        folder = {'datasets': self.datasets_dir, 'chains': self.chains_dir, 'tables': self.tables_dir}[kind]
        return sorted(p.stem for p in folder.iterdir())


class CheckpointManager:
    """Per-replicate checkpoints so an interrupted harness run can resume"""

    def __init__(self, checkpoint_dir):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, sim):
        return self.checkpoint_dir / f"rep{int(sim)}.pkl"

    def save_replicate(self, sim, record):
        # write then rename, so an abandoned write never looks like a finished replicate
        path = self._path(sim)
        tmp = path.with_suffix('.tmp')
        with open(tmp, 'wb') as f:
            pickle.dump(record, f)
        os.replace(tmp, path)

    def load_replicate(self, sim):
        path = self._path(sim)
        if not path.exists():
            return None
        with open(path, 'rb') as f:
            return pickle.load(f)

    def exists(self, sim) -> bool:
        return self._path(sim).exists()

    def completed(self, n_replicates):
        """{sim: record} for every finished replicate in 1..n_replicates"""
        return {sim: self.load_replicate(sim) for sim in range(1, n_replicates + 1) if self.exists(sim)}

    def pending(self, n_replicates):
        return [sim for sim in range(1, n_replicates + 1) if not self.exists(sim)]

    def clear(self):
        for f in self.checkpoint_dir.glob('rep*.pkl'):
            f.unlink()
