"""Conversion between ArviZ posteriors and flat per-chain sample tables"""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import List, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd

from .errors import ConfigurationError

_NAME_RE = re.compile(r'^(?P<base>[^\[\]]+)(?:\[(?P<idx>[\d,\s]+)\])?$')


def _flat_names(var, shape):
    if not shape:
        return [var]
    return [f"{var}[{','.join(str(i) for i in idx)}]" for idx in np.ndindex(*shape)]


def posterior_to_chains(posterior, var_names: Optional[Sequence[str]] = None,
                        thin: int = 1) -> List[pd.DataFrame]:
    """Flatten an xarray posterior (chain, draw, ...) into one DataFrame per chain.

    Vector variables become ``name[i]`` columns; variables listed in
    ``var_names`` but absent from the posterior are skipped.
    """
    names = list(posterior.data_vars) if var_names is None else [v for v in var_names if v in posterior]
    if not names:
        raise ConfigurationError("None of the requested variables are present in the posterior")
    blocks, columns = [], []
    for var in names:
        values = np.asarray(posterior[var].values, dtype=float)
        shape = values.shape[2:]
        blocks.append(values.reshape(values.shape[0], values.shape[1], -1))
        columns.extend(_flat_names(var, shape))
    stacked = np.concatenate(blocks, axis=2)[:, ::thin, :]
    return [pd.DataFrame(stacked[c], columns=columns) for c in range(stacked.shape[0])]


def _parse_name(name):
    match = _NAME_RE.match(name)
    if match is None:
        raise ConfigurationError(f"Cannot parse parameter name {name!r}")
    idx = match.group('idx')
    return match.group('base'), (tuple(int(i) for i in idx.split(',')) if idx else ())


def chains_to_inference_data(chains: Sequence[pd.DataFrame]) -> az.InferenceData:
    """Reassemble flat per-chain tables into an ArviZ InferenceData posterior"""
    if not chains:
        raise ConfigurationError("No chains to convert")
    draws = np.stack([c.to_numpy(dtype=float) for c in chains])
    groups = OrderedDict()
    for j, name in enumerate(chains[0].columns):
        base, idx = _parse_name(name)
        groups.setdefault(base, []).append((idx, j))

    posterior = {}
    for base, entries in groups.items():
        if entries[0][0] == ():
            posterior[base] = draws[:, :, entries[0][1]]
            continue
        shape = tuple(max(idx[d] for idx, _ in entries) + 1 for d in range(len(entries[0][0])))
        values = np.full(draws.shape[:2] + shape, np.nan)
        for idx, j in entries:
            values[(slice(None), slice(None)) + idx] = draws[:, :, j]
        posterior[base] = values
    return az.from_dict(posterior=posterior)


def inference_data_to_chains(idata: az.InferenceData, var_names=None) -> List[pd.DataFrame]:
    """Flat per-chain tables from the posterior group of an InferenceData"""
    return posterior_to_chains(idata.posterior, var_names=var_names)
