import numpy as np
import logging

from occupancy_module import (
    Covariates, SamplerConfig, fit_occupancy, posterior_predictive_check, posterior_summary, predict, waic,
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def simulate_spatial_occupancy(n_sites=100, n_reps=4, seed=0):
    """
    Simulate detection/non-detection data with an exponential spatial random effect.

    Returns:
        dict: y (n_sites, n_reps), covariates, coords and the true occupancy state.
    """
    rng = np.random.default_rng(seed)
    coords = rng.uniform(0, 1, size=(n_sites, 2))
    forest = rng.standard_normal(n_sites)
    wind = rng.standard_normal((n_sites, n_reps))

    d = np.sqrt(((coords[:, None, :] - coords[None, :, :])**2).sum(-1))
    w = np.linalg.cholesky(np.exp(-4.0 * d) + 1e-8 * np.eye(n_sites)) @ rng.standard_normal(n_sites)

    psi = 1 / (1 + np.exp(-(0.3 + 0.9 * forest + w)))
    z = rng.binomial(1, psi)
    p = 1 / (1 + np.exp(-(0.4 - 0.6 * wind)))
    y = rng.binomial(1, p * z[:, None]).astype(float)

    covariates = Covariates(occ_site={'forest': forest}, det_obs={'wind': wind})
    return {'y': y, 'covariates': covariates, 'coords': coords, 'z': z}


def run_example():
    logging.info("Simulating data...")
    sim = simulate_spatial_occupancy()

    # Increase n_batch for real analysis
    config = SamplerConfig(n_batch=200, batch_length=25, n_burn=2000, n_thin=5,
                           n_chains=3, n_neighbors=10, n_workers=3, seed=42, verbose=True)

    logging.info("Starting MCMC chains...")
    result = fit_occupancy(sim['y'], sim['covariates'], config, coords=sim['coords'])
    logging.info("Model finished.")

    # --- Analyze results ---
    summary = posterior_summary(result)
    logging.info(f"Posterior summary:\n{summary.round(3)}")

    fit = waic(result)
    logging.info(f"WAIC: {fit['waic']:.2f} (p_waic={fit['p_waic']:.2f})")

    ppc = posterior_predictive_check(result, fit_stat='freeman-tukey', group='site', seed=1)
    logging.info(f"Bayesian p-value: {ppc['bayes_p']:.3f}")

    eff_range = result.effective_range()
    logging.info(f"Effective spatial range: {np.mean(eff_range):.3f} "
                 f"[{np.quantile(eff_range, 0.025):.3f}, {np.quantile(eff_range, 0.975):.3f}]")

    # --- Predict on a grid ---
    grid = np.stack(np.meshgrid(np.linspace(0.05, 0.95, 10), np.linspace(0.05, 0.95, 10)), -1).reshape(-1, 2)
    pred = predict(result, Covariates(occ_site={'forest': np.zeros(len(grid))}), coords_0=grid, seed=2)
    logging.info(f"Mean predicted occupancy over the grid: {pred['psi'].mean():.3f}")

    output_filename = "occupancy_example_samples.npz"
    np.savez_compressed(output_filename, psi_grid=pred['psi'], grid=grid,
                        **{name: result.get(name) for name in result.names})
    logging.info(f"Saved posterior draws to {output_filename}")


if __name__ == "__main__":
    run_example()
