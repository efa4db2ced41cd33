#!/usr/bin/env python3
"""
Command-line entry point

    nmixture-validate simulate  --nsites 75 --nvisits 8 --beta 0.5 -0.3 --alpha 0.2 0.1
    nmixture-validate replicate --replicates 50 --config study.json --n-jobs 4
"""

import argparse
import sys
import time
import traceback

from .artifacts import CheckpointManager, RunDirectory
from .config import FAMILIES, POISSON, OUTPUT_DIR, FitConfig, GenerationConfig, load_config
from .covariates import load_site_table, load_visit_table, make_landscape
from .engines import PyMCEngine
from .errors import NMixtureError
from .harness import ReplicationHarness
from .simulate import simulate_from_config


def _add_table_args(p):
    p.add_argument('--sites', type=str, default=None, help='Site covariate CSV (site_id + site covariates).')
    p.add_argument('--visits', type=str, default=None, help='Visit covariate CSV (visit_id, site_id + visit covariates).')
    p.add_argument('--landscape-sites', type=int, default=200,
                   help='Number of synthetic sites when no CSV tables are given.')
    p.add_argument('--landscape-visits', type=int, default=12,
                   help='Synthetic visits per site when no CSV tables are given.')
    p.add_argument('--landscape-seed', type=int, default=0, help='Seed for the synthetic landscape.')


def _add_generation_args(p):
    p.add_argument('--config', type=str, default=None,
                   help='JSON file with "generation" (and optionally "fitting") sections; overrides the flags below.')
    p.add_argument('--family', choices=FAMILIES, default=POISSON, help='Abundance distribution.')
    p.add_argument('--zero-inflated', action='store_true', help='Add the latent occupancy layer.')
    p.add_argument('--nsites', type=int, default=None, help='Sites to observe (default: all).')
    p.add_argument('--nvisits', type=int, default=None, help='Visits to observe per site (default: all).')
    p.add_argument('--beta', type=float, nargs='+', default=[0.5, -0.3], help='Abundance coefficients.')
    p.add_argument('--alpha', type=float, nargs='+', default=[0.2, 0.1], help='Detection coefficients.')
    p.add_argument('--delta', type=float, nargs='+', default=None, help='Occupancy coefficients (zero-inflated only).')
    p.add_argument('--phi', type=float, default=None, help='Negative-binomial dispersion.')
    p.add_argument('--seed', type=int, default=1, help='Simulation seed.')


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nmixture-validate',
        description='Simulate N-mixture survey data and check parameter recovery and interval coverage.',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    sim = sub.add_parser('simulate', help='Simulate one synthetic survey dataset.')
    _add_table_args(sim)
    _add_generation_args(sim)
    sim.add_argument('--output-dir', type=str, default=None, help='Save the dataset under this directory.')

    rep = sub.add_parser('replicate', help='Run the replication & calibration harness with PyMC.')
    _add_table_args(rep)
    _add_generation_args(rep)
    rep.add_argument('--replicates', type=int, default=20, help='Number of replicates (seeds 1..R).')
    rep.add_argument('--nchains', type=int, default=3)
    rep.add_argument('--niter', type=int, default=2000, help='Iterations per chain, warmup included.')
    rep.add_argument('--warmup', type=int, default=1000)
    rep.add_argument('--thin', type=int, default=1)
    rep.add_argument('--interval', type=float, default=0.95, help='Credible interval level for coverage.')
    rep.add_argument('--n-jobs', type=int, default=1, help='Parallel replicates (-1 = all cores).')
    rep.add_argument('--output-dir', type=str, default=OUTPUT_DIR, help='Base directory for run outputs.')
    rep.add_argument('--resume', action='store_true', help='Reuse per-replicate checkpoints in the run directory.')
    rep.add_argument('--run-id', type=str, default=None, help='Run directory name (needed with --resume).')
    return parser


def _tables(args):
    if args.sites or args.visits:
        if not (args.sites and args.visits):
            raise NMixtureError('--sites and --visits must be given together')
        return load_site_table(args.sites), load_visit_table(args.visits)
    return make_landscape(args.landscape_sites, args.landscape_visits, seed=args.landscape_seed)


def _fit_from_args(args):
    return FitConfig(nchains=args.nchains, niter=args.niter, warmup=args.warmup,
                     thin=args.thin, interval_prob=args.interval)


def _configs(args):
    """Generation and fitting settings; a config file without a fitting section falls back to the flags"""
    if args.config:
        generation, fitting = load_config(args.config)
    else:
        generation = GenerationConfig(
            beta=args.beta, alpha=args.alpha, delta=args.delta, phi=args.phi,
            family=args.family, zero_inflated=args.zero_inflated,
            nsites=args.nsites, nvisits=args.nvisits, seed=args.seed,
        )
        fitting = None
    if fitting is None and args.command == 'replicate':
        fitting = _fit_from_args(args)
    return generation, fitting


def cmd_simulate(args):
    sites, visits = _tables(args)
    generation, _ = _configs(args)
    dataset = simulate_from_config(sites, visits, generation)

    print("\n" + "=" * 80)
    print(f"SIMULATED DATASET ({dataset.variant.name}, seed {dataset.seed})")
    print("=" * 80)
    for key, value in dataset.describe().items():
        print(f"  {key}: {value:.4f}" if isinstance(value, float) else f"  {key}: {value}")

    if args.output_dir:
        run = RunDirectory(args.output_dir)
        folder = run.save_dataset(dataset, f"seed{dataset.seed}")
        print(f"✅ Dataset saved to {folder}")
    return 0


def cmd_replicate(args):
    sites, visits = _tables(args)
    generation, fitting = _configs(args)
    run = RunDirectory(args.output_dir, run_id=args.run_id)
    checkpoint_dir = run.path / 'checkpoints'
    if not args.resume:
        CheckpointManager(checkpoint_dir).clear()

    print(f"Run ID: {run.run_id}")
    print(f"Outputs: {run.path}")
    harness = ReplicationHarness(
        sites, visits, generation, fitting,
        engine=PyMCEngine(verbose=args.n_jobs == 1),
        n_jobs=args.n_jobs,
        checkpoint_dir=checkpoint_dir,
    )
    result = harness.run(args.replicates)
    table = result.report()
    result.report(by='group')

    run.save_table(result.rows, 'replicate_rows', index=False)
    run.save_table(table, 'calibration_by_parameter')
    run.save_table(result.aggregate(by='group'), 'calibration_by_group')
    print(f"✅ Tables saved to {run.tables_dir}")
    return 0


def main(argv=None):
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    try:
        if args.command == 'simulate':
            return cmd_simulate(args)
        return cmd_replicate(args)
    except NMixtureError as e:
        print(f"\n❌ {type(e).__name__}: {e}")
        return 2
    except Exception as e:
        print(f"\n❌ FATAL ERROR: {e}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
