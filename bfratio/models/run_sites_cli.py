"""Command-line interface for fitting and plotting every site."""
import argparse
from functools import partial
from pathlib import Path
import sys

import arviz as az
import matplotlib.pyplot as plt

from bfratio.data.site_months import build_site_month_table, load_site_month_data
from bfratio.models.fit_ratio import run_all_sites
from bfratio.models.plot_ratio import plot_all_sites, plot_parameter_correlation
from bfratio.models.samplers import GibbsSampler, StanSampler
from bfratio.models.spec import ModelConfig, default_spec


def main(argv=None):
    """Fit the ratio state-space model to each site and plot the envelopes."""
    parser = argparse.ArgumentParser(
        description="Fit a Bayesian state-space model of bacteria:fungi ratios per site",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Input/output options
    parser.add_argument(
        "--data-file",
        type=str,
        default="data/site_month_covariates.parquet",
        help="Site x year-month covariate table (.parquet, .csv or .pkl)",
    )
    parser.add_argument(
        "--samples-file",
        type=str,
        default=None,
        help="Raw soil sample table used to build --data-file when it is missing",
    )
    parser.add_argument(
        "--climate-file",
        type=str,
        default=None,
        help="Daily climate table used to build --data-file when it is missing",
    )
    parser.add_argument(
        "--output-dir",
        "-o",
        type=str,
        default="output",
        help="Directory for plots, draws and cache",
    )
    parser.add_argument(
        "--sites",
        type=str,
        nargs="+",
        default=None,
        help="Sites to fit (default: all sites in the data file)",
    )
    parser.add_argument(
        "--deep-dive-site",
        type=str,
        default=None,
        help="Site whose production draws are saved as NetCDF",
    )
    parser.add_argument(
        "--no-show",
        action="store_true",
        help="Don't display the plots interactively (just save to file)",
    )

    # Sampler options
    parser.add_argument(
        "--sampler",
        choices=["stan", "gibbs"],
        default="stan",
        help="MCMC backend",
    )
    parser.add_argument(
        "--stan-dir",
        type=str,
        default="stan",
        help="Directory for the rendered Stan program",
    )
    parser.add_argument(
        "--chains",
        type=int,
        default=3,
        help="Number of MCMC chains",
    )
    parser.add_argument(
        "--iter-warmup",
        type=int,
        default=1000,
        help="Warmup (Stan) or adaptation (Gibbs) iterations",
    )
    parser.add_argument(
        "--thin",
        type=int,
        default=1,
        help="Thinning interval (Stan only)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed",
    )

    # Iteration schedule
    parser.add_argument(
        "--diagnostic-iter",
        type=int,
        default=5000,
        help="Iterations of the convergence-check run",
    )
    parser.add_argument(
        "--dense-iter",
        type=int,
        default=30000,
        help="Production iterations for well-sampled sites",
    )
    parser.add_argument(
        "--sparse-iter",
        type=int,
        default=100000,
        help="Maximum production iterations for sparse sites",
    )
    parser.add_argument(
        "--reference-obs",
        type=int,
        default=12,
        help="Observed months at which a site counts as well sampled",
    )
    parser.add_argument(
        "--max-extensions",
        type=int,
        default=2,
        help="Times the convergence-check run may be doubled",
    )
    parser.add_argument(
        "--no-enforce-convergence",
        action="store_true",
        help="Warn instead of failing a site whose R-hat stays >= 1.1",
    )
    parser.add_argument(
        "--cache",
        action="store_true",
        help="Cache site fits in the output directory",
    )
    parser.add_argument(
        "--force-refit",
        action="store_true",
        help="Force re-fitting even if cached results exist",
    )

    args = parser.parse_args(argv)
    if (args.samples_file is None) != (args.climate_file is None):
        parser.error("--samples-file and --climate-file must be given together")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    builder = None
    if args.samples_file is not None:
        builder = partial(build_site_month_table, args.samples_file, args.climate_file)

    df = load_site_month_data(args.data_file, builder=builder)

    if args.sampler == "stan":
        sampler = StanSampler(
            stan_dir=args.stan_dir,
            iter_warmup=args.iter_warmup,
            thin=args.thin,
            seed=args.seed,
        )
    else:
        sampler = GibbsSampler(n_adapt=args.iter_warmup, seed=args.seed)

    spec = default_spec()
    results, failures = run_all_sites(
        df,
        sampler,
        sites=args.sites,
        config=ModelConfig(),
        spec=spec,
        chains=args.chains,
        dense_iter=args.dense_iter,
        sparse_iter=args.sparse_iter,
        reference_obs=args.reference_obs,
        diagnostic_iter=args.diagnostic_iter,
        max_extensions=args.max_extensions,
        enforce_convergence=not args.no_enforce_convergence,
        output_dir=output_dir,
        save_draws_for=[args.deep_dive_site] if args.deep_dive_site else [],
        cache=args.cache,
        force_refit=args.force_refit,
    )

    if not results:
        print(f"No site could be fitted ({len(failures)} failures).", file=sys.stderr)
        return 1

    for site_id, result in results.items():
        summary = az.summary(result["idata"], var_names=spec.diagnostic_vars(), round_to=3)
        summary.to_csv(output_dir / f"{site_id}_posterior_summary.csv")
        plot_parameter_correlation(
            result["diagnostic_idata"],
            spec.coefficients,
            title=f"Site {site_id}: coefficient correlation",
            output_path=output_dir / f"{site_id}_correlation.png",
        )
        plt.close()

    plot_all_sites(results, output_path=output_dir / "ratio_all_sites.png")

    if not args.no_show:
        plt.show()

    return 0


if __name__ == "__main__":
    sys.exit(main())
