import numpy as np
import statsmodels.api as sm
from statsmodels.genmod.families import Binomial
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional
from tqdm import tqdm
import logging

from occupancy_module.adaptive import AdaptiveParameter
from occupancy_module.config import Inits, Priors, SamplerConfig
from occupancy_module.data import (
    Covariates, OccupancyData, _random_effect_values, detection_design, encode_levels,
    occupancy_design, prepare_data,
)
from occupancy_module.errors import (
    InvalidConfigurationError, InvalidInputError, NumericalInstabilityError, SamplingCancelledError,
)
from occupancy_module.kernels import decay_prior_bounds, effective_range
from occupancy_module.neighbors import build_neighbor_index, check_coords, nearest_fitted_neighbors
from occupancy_module.nngp import krige_nngp, nngp_factors, nngp_logdens, nngp_quadratic, sample_factors, sample_nngp_field
from occupancy_module.updates import (
    constrain_loadings, loading_mask, sample_coefficients, sample_community_mean,
    sample_community_variance, sample_latent_state, sample_loadings, sample_polya_gamma,
    sample_random_effects, sample_variance,
)
from occupancy_module.utils import check_finite, make_occupancy_arrays, nullcheck, rinvgamma, sigmoid

logger = logging.getLogger(__name__)

# Stored parameters whose second axis is the species axis
SPECIES_AXIS = ('beta', 'alpha', 'z', 'psi', 'beta_star', 'alpha_star', 'w', 'sigma_sq', 'phi', 'nu', 'lambda')

# ==============================================================================
# Model setup and results
# ==============================================================================

@dataclass
class ModelSpec:
    """Everything a chain needs, resolved and validated before any chain starts."""

    data: OccupancyData
    config: SamplerConfig
    priors: Priors
    inits: dict
    community: bool
    spatial: str
    cov_model: Optional[str]
    index: object = None
    phi_bounds: Optional[tuple] = None
    re_starts: np.ndarray = None
    p_re_starts: np.ndarray = None
    glm_beta: np.ndarray = None
    glm_alpha: np.ndarray = None

    @property
    def n_factors(self):
        return self.config.n_factors if self.spatial in ('factor', 'latent') else 0


@dataclass
class ChainSamples:
    """Retained draws of one chain. Arrays are read-only once the chain has finished."""

    chain: int
    samples: dict
    acceptance: dict = field(default_factory=dict)
    tuning: dict = field(default_factory=dict)


@dataclass
class FitResult:
    """Output of fit_occupancy / fit_ms_occupancy."""

    spec: ModelSpec
    chains: list
    k_fold: Optional[dict] = None

    @property
    def data(self):
        return self.spec.data

    @property
    def n_chains(self):
        return len(self.chains)

    @property
    def n_samples(self):
        """Retained draws per chain."""
        return self.spec.config.n_samples

    @property
    def names(self):
        return list(self.chains[0].samples)

    def samples(self, name, chain=None):
        """Raw draws with the species axis kept; pooled over chains unless a chain is given."""
        if chain is not None:
            return self.chains[chain].samples[name]
        return np.concatenate([c.samples[name] for c in self.chains], axis=0)

    def get(self, name, chain=None):
        """Draws of a parameter; single-species models drop the species axis."""
        out = self.samples(name, chain)
        if not self.data.multispecies and name in SPECIES_AXIS:
            out = out[:, 0]
        return out

    def effective_range(self, chain=None):
        """Posterior draws of the distance at which spatial correlation falls to 0.05."""
        if 'phi' not in self.names:
            raise KeyError("model has no spatial decay parameter")
        phi = self.get('phi', chain)
        nu = self.get('nu', chain) if 'nu' in self.names else None
        return effective_range(phi, self.spec.cov_model, nu)

# ==============================================================================
# Initial values
# ==============================================================================

def _glm_binomial(y, X, label):
    p = X.shape[1]
    if y.size <= p or np.all(y == y[0]):
        logger.warning(f"Not enough variation to fit initial GLM for {label}, defaulting to zeros.")
        return np.zeros(p)
    try:
        m1 = sm.GLM(y, X, family=Binomial()).fit()
        params = np.asarray(m1.params, dtype=np.float64)
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
        logger.warning(f"Could not fit initial GLM for {label}, defaulting to zeros. Error: {e}")
        return np.zeros(p)
    if not np.all(np.isfinite(params)):
        logger.warning(f"GLM for initial {label} resulted in non-finite values. Defaulting to zeros.")
        return np.zeros(p)
    # quasi-separation gives huge estimates; they are only starting points
    return np.clip(params, -5.0, 5.0)


def initial_coefficients(data):
    """
    Starting coefficients from binomial GLMs: occupancy on the naive
    (observed maximum) state, detection on the cells of units with a detection.
    """
    z_naive = np.nan_to_num(data.y_units, nan=0.0).max(axis=2)
    unit_index = data.layout['unit_index']
    beta0 = np.zeros((data.n_species, data.X.shape[1]))
    alpha0 = np.zeros((data.n_species, data.X_p.shape[1]))
    for sp in range(data.n_species):
        beta0[sp] = _glm_binomial(z_naive[sp], data.X, f"occupancy ({data.species[sp]})")
        mask = z_naive[sp][unit_index] == 1
        alpha0[sp] = _glm_binomial(data.y_obs[sp][mask], data.X_p[mask], f"detection ({data.species[sp]})")
        logger.debug(f"Initial beta from GLM for {data.species[sp]}: {beta0[sp]}")
        logger.debug(f"Initial alpha from GLM for {data.species[sp]}: {alpha0[sp]}")
    return beta0, alpha0


def _init_array(value, shape, name):
    if value is None:
        return None
    try:
        return np.broadcast_to(np.asarray(value, dtype=np.float64), shape).copy()
    except ValueError as e:
        raise InvalidInputError(f"initial value for {name} cannot be shaped to {shape}") from e


def _resolve_inits(inits, data, n_re, n_p_re, spatial, n_factors, phi_bounds, nu_bounds):
    """Validate user initial values against the model dimensions."""
    N, U = data.n_species, data.n_units
    p, p_det = data.X.shape[1], data.X_p.shape[1]
    n_fields = N if spatial == 'nngp' else n_factors
    out = {
        'beta': _init_array(inits.beta, (N, p), 'beta'),
        'alpha': _init_array(inits.alpha, (N, p_det), 'alpha'),
        'z': _init_array(inits.z, (N, U), 'z'),
        'sigma_sq_psi': _init_array(inits.sigma_sq_psi, (n_re,), 'sigma_sq_psi'),
        'sigma_sq_p': _init_array(inits.sigma_sq_p, (n_p_re,), 'sigma_sq_p'),
        'sigma_sq': _init_array(inits.sigma_sq, (n_fields,), 'sigma_sq'),
        'phi': _init_array(inits.phi, (n_fields,), 'phi'),
        'nu': _init_array(inits.nu, (n_fields,), 'nu'),
        'w': _init_array(inits.w, (N, data.n_sites), 'w'),
        'beta_comm': _init_array(inits.beta_comm, (p,), 'beta_comm'),
        'alpha_comm': _init_array(inits.alpha_comm, (p_det,), 'alpha_comm'),
        'tau_sq_beta': _init_array(inits.tau_sq_beta, (p,), 'tau_sq_beta'),
        'tau_sq_alpha': _init_array(inits.tau_sq_alpha, (p_det,), 'tau_sq_alpha'),
        'lambda': _init_array(inits.lambda_, (N, n_factors), 'lambda'),
    }
    if out['z'] is not None:
        if not np.all(np.isin(out['z'], (0.0, 1.0))):
            raise InvalidInputError("initial z must be 0 or 1")
        if np.any(out['z'][data.detected] == 0):
            raise InvalidInputError("initial z must be 1 wherever a detection was recorded")
    for name in ('sigma_sq_psi', 'sigma_sq_p', 'sigma_sq', 'tau_sq_beta', 'tau_sq_alpha'):
        if out[name] is not None and np.any(out[name] <= 0):
            raise InvalidInputError(f"initial {name} must be positive")
    for name, bounds in (('phi', phi_bounds), ('nu', nu_bounds)):
        if out[name] is not None and bounds is not None and \
                np.any((out[name] <= bounds[0]) | (out[name] >= bounds[1])):
            raise InvalidInputError(f"initial {name} must lie strictly inside its prior bounds {bounds}")
    return out

# ==============================================================================
# Building blocks of one iteration
# ==============================================================================

def update_random_effects(codes, starts, values, sigma_sq, omega, kappa, offset, sigmaPrior, rng):
    """
    Update every unstructured random intercept and its variance.

    :param codes: (rows, r) level codes
    :param starts: Offsets of each effect's levels inside values
    :param values: (N, total levels) current random intercepts
    :param offset: (N, rows) linear predictor without any random intercept
    :return: A Dictionary with values, sigma_sq and the summed contribution (N, rows)
    """
    n_re = codes.shape[1]
    contrib = [values[:, starts[r] + codes[:, r]] for r in range(n_re)]
    for r in range(n_re):
        n_levels = starts[r + 1] - starts[r]
        others = sum(contrib[q] for q in range(n_re) if q != r)
        for sp in range(values.shape[0]):
            other_sp = others[sp] if n_re > 1 else 0.0
            values[sp, starts[r]:starts[r + 1]] = sample_random_effects(
                codes[:, r], n_levels, omega[sp], kappa[sp], offset[sp] + other_sp, sigma_sq[r], rng
            )
        contrib[r] = values[:, starts[r] + codes[:, r]]
        sigma_sq[r] = sample_variance(values[:, starts[r]:starts[r + 1]], sigmaPrior[0], sigmaPrior[1], rng)
    return {'values': values, 'sigma_sq': sigma_sq, 'contrib': np.sum(contrib, axis=0)}


def update_nngp_process(w, sigma_sq, phi, nu, B, F, index, data_prec, data_lin, sigmaPrior, cov_model, rng,
                        param_name="w"):
    """
    Update one NNGP field and its parameters.

    :param w: Current field (J,)
    :param sigma_sq: Current spatial variance
    :param phi: AdaptiveParameter for the decay
    :param nu: AdaptiveParameter for the matern smoothness, or None
    :param B, F: NNGP weights/variances at the current phi and nu
    :param sigmaPrior: (a, b) Inverse-Gamma prior of sigma_sq
    :return: A Dictionary of the following sampled values:
         - w: field
         - sigma_sq: spatial variance
         - B, F: NNGP structure at the (possibly new) phi and nu
    """
    w = sample_nngp_field(w, index, B, F, sigma_sq, data_prec, data_lin, rng)

    a_new = sigmaPrior[0] + 0.5 * index.n_sites
    b_new = sigmaPrior[1] + 0.5 * nngp_quadratic(w, index, B, F)
    sigma_sq = float(rinvgamma(a_new, b_new, rng))
    logger.debug(f"  - {param_name}: sigma_sq={sigma_sq:.4f}")

    B, F = update_decay(w, sigma_sq, phi, nu, (B, F), index, cov_model, rng, param_name)
    return {'w': w, 'sigma_sq': sigma_sq, 'B': B, 'F': F}


def update_decay(w, sigma_sq, phi, nu, BF, index, cov_model, rng, param_name="w"):
    """
    Metropolis updates of the decay (and matern smoothness) of one NNGP field,
    targeting the NNGP density of the field under a Uniform prior.

    :return: (B, F) at the current phi and nu
    """
    nu_value = None if nu is None else nu.value

    def log_target_phi(value):
        B_c, F_c = nngp_factors(index, value, cov_model, nu_value)
        return nngp_logdens(w, index, B_c, F_c, sigma_sq)

    changed = phi.step(log_target_phi, rng)

    if nu is not None:
        def log_target_nu(value):
            B_c, F_c = nngp_factors(index, phi.value, cov_model, value)
            return nngp_logdens(w, index, B_c, F_c, sigma_sq)

        changed = nu.step(log_target_nu, rng) or changed

    if not changed:
        return BF
    logger.debug(f"  - {param_name}: phi={phi.value:.4f}" + ("" if nu is None else f", nu={nu.value:.4f}"))
    return nngp_factors(index, phi.value, cov_model, None if nu is None else nu.value)


def _site_sums(V_site, values):
    """(N, n_units) -> (N, J) sums over the occupancy units of each site."""
    return np.asarray((V_site.T @ values.T).T)

# ==============================================================================
# One chain
# ==============================================================================

def run_chain(spec, chain, seed, stop_event=None):
    """
    Run one MCMC chain: initialize, then n_batch * batch_length iterations of
    latent state -> Polya-Gamma -> coefficients -> spatial terms.

    :param spec: ModelSpec
    :param chain: Chain index (for logging and errors)
    :param seed: Seed (or SeedSequence) of this chain's own generator
    :param stop_event: Optional event; when set the chain stops between iterations
    :return: ChainSamples
    """
    rng = np.random.default_rng(seed)
    data, config, priors = spec.data, spec.config, spec.priors

    N, U, J = data.n_species, data.n_units, data.n_sites
    p, p_det = data.X.shape[1], data.X_p.shape[1]
    X, X_p = data.X, data.X_p
    y_obs = data.y_obs
    site_index = data.layout['site_index']
    unit_index = data.layout['unit_index']
    V_unit, V_site = data.layout['V_unit'], data.layout['V_site']
    detected = data.detected
    n_re, n_p_re = data.X_re.shape[1], data.X_p_re.shape[1]
    q = spec.n_factors
    inits = spec.inits

    ##########
    # Priors #
    ##########
    mu_beta, T0b = priors.normal('beta_normal', p)
    mu_alpha, T0a = priors.normal('alpha_normal', p_det)
    var_beta, var_alpha = 1.0 / np.diag(T0b), 1.0 / np.diag(T0a)

    #########
    # Inits #
    #########
    # Naive occupancy; units with every replicate missing start occupied
    z = np.nan_to_num(data.y_units, nan=0.0).max(axis=2)
    z[np.all(np.isnan(data.y_units), axis=2)] = 1.0
    if inits['z'] is not None:
        z = inits['z'].copy()

    beta = nullcheck(inits['beta'], spec.glm_beta + config.init_jitter * rng.standard_normal((N, p)))
    alpha = nullcheck(inits['alpha'], spec.glm_alpha + config.init_jitter * rng.standard_normal((N, p_det)))
    beta, alpha = beta.copy(), alpha.copy()

    if spec.community:
        beta_comm = nullcheck(inits['beta_comm'], beta.mean(axis=0)).copy()
        alpha_comm = nullcheck(inits['alpha_comm'], alpha.mean(axis=0)).copy()
        tau_sq_beta = nullcheck(inits['tau_sq_beta'], np.ones(p)).copy()
        tau_sq_alpha = nullcheck(inits['tau_sq_alpha'], np.ones(p_det)).copy()

    beta_star = np.zeros((N, spec.re_starts[-1]))
    sigma_sq_psi = nullcheck(inits['sigma_sq_psi'], np.ones(n_re)).copy()
    alpha_star = np.zeros((N, spec.p_re_starts[-1]))
    sigma_sq_p = nullcheck(inits['sigma_sq_p'], np.ones(n_p_re)).copy()
    X_re_g = data.X_re + spec.re_starts[:-1]
    X_p_re_g = data.X_p_re + spec.p_re_starts[:-1]
    re_psi = np.zeros((N, U))
    re_p = np.zeros((N, data.n_obs))

    ##########################
    # Spatial Random Effects #
    ##########################
    adaptive = []
    sp_unit = np.zeros((N, U))
    tuning = config.tuning
    if spec.spatial in ('nngp', 'factor'):
        a_phi, b_phi = spec.phi_bounds
        a_nu, b_nu = priors.nu_unif
        n_fields = N if spec.spatial == 'nngp' else q
        pad_phi = 0.05 * (b_phi - a_phi)
        phi_start = nullcheck(inits['phi'], rng.uniform(a_phi + pad_phi, b_phi - pad_phi, n_fields))
        nu_start = nullcheck(inits['nu'], rng.uniform(a_nu + 0.05 * (b_nu - a_nu), b_nu - 0.05 * (b_nu - a_nu), n_fields))
        phi_pars = [AdaptiveParameter(f"phi[{k}]", float(phi_start[k]), tuning.get('phi', 1.0), a_phi, b_phi)
                    for k in range(n_fields)]
        nu_pars = [AdaptiveParameter(f"nu[{k}]", float(nu_start[k]), tuning.get('nu', 1.0), a_nu, b_nu)
                   if spec.cov_model == 'matern' else None for k in range(n_fields)]
        adaptive = phi_pars + [par for par in nu_pars if par is not None]
        try:
            BF = [nngp_factors(spec.index, phi_pars[k].value, spec.cov_model,
                               None if nu_pars[k] is None else nu_pars[k].value) for k in range(n_fields)]
        except NumericalInstabilityError as e:
            # reported as iteration 0
            e.chain, e.iteration = chain, 0
            logger.error(f"Chain {chain} failed during initialization: {e.args[0]}")
            raise
    if spec.spatial == 'nngp':
        w = nullcheck(inits['w'], np.zeros((N, J))).copy()
        sigma_sq = nullcheck(inits['sigma_sq'], np.ones(N)).copy()
        sp_unit = w[:, site_index]
    if spec.spatial in ('factor', 'latent'):
        free, _ = loading_mask(N, q)
        lam = nullcheck(inits['lambda'], np.where(free, rng.standard_normal((N, q)), 0.0))
        lam = constrain_loadings(lam)
        factors = np.zeros((J, q))
    logger.debug(f"Chain {chain}: initialized (spatial={spec.spatial}, adaptive parameters={len(adaptive)})")

    ############
    # Num Sims #
    ############
    n_iter = config.n_iter
    lastit = config.n_samples

    #########
    # Store #
    #########
    store = {
        'beta': np.zeros((lastit, N, p)),
        'alpha': np.zeros((lastit, N, p_det)),
        'z': np.zeros((lastit, N, U), dtype=np.int8),
        'psi': np.zeros((lastit, N, U)),
    }
    if spec.community:
        store.update({'beta_comm': np.zeros((lastit, p)), 'tau_sq_beta': np.zeros((lastit, p)),
                      'alpha_comm': np.zeros((lastit, p_det)), 'tau_sq_alpha': np.zeros((lastit, p_det))})
    if n_re:
        store.update({'beta_star': np.zeros((lastit, N, beta_star.shape[1])), 'sigma_sq_psi': np.zeros((lastit, n_re))})
    if n_p_re:
        store.update({'alpha_star': np.zeros((lastit, N, alpha_star.shape[1])), 'sigma_sq_p': np.zeros((lastit, n_p_re))})
    if spec.spatial == 'nngp':
        store.update({'w': np.zeros((lastit, N, J)), 'sigma_sq': np.zeros((lastit, N)), 'phi': np.zeros((lastit, N))})
    if spec.spatial in ('factor', 'latent'):
        store.update({'lambda': np.zeros((lastit, N, q)), 'factors': np.zeros((lastit, J, q)), 'w': np.zeros((lastit, N, J))})
    if spec.spatial == 'factor':
        store['phi'] = np.zeros((lastit, q))
    if spec.spatial in ('nngp', 'factor') and spec.cov_model == 'matern':
        store['nu'] = np.zeros_like(store['phi'])

    ########
    # MCMC #
    ########
    xb = beta @ X.T
    xa = alpha @ X_p.T
    eta_psi = xb + re_psi + sp_unit
    eta_p = xa + re_p

    iterations = range(1, n_iter + 1)
    if config.verbose:
        iterations = tqdm(iterations, desc=f"Chain {chain}", position=chain)

    i = 0
    try:
        for i in iterations:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Chain {chain}: cancelled after iteration {i - 1}, discarding its draws.")
                raise SamplingCancelledError(chain, i - 1)

            # -----------------------------------------------------
            # Update latent occupancy state z
            # -----------------------------------------------------
            psi = sigmoid(check_finite(eta_psi, "occupancy linear predictor"))
            p_prob = sigmoid(check_finite(eta_p, "detection linear predictor"))
            z = sample_latent_state(psi, p_prob, V_unit, detected, rng)
            z_obs = z[:, unit_index]

            # -----------------------------------------------------
            # Polya-Gamma auxiliaries
            # -----------------------------------------------------
            omega_psi = sample_polya_gamma(eta_psi, rng, "occupancy linear predictor")
            omega_p = sample_polya_gamma(eta_p, rng, "detection linear predictor")
            kappa_psi = z - 0.5
            # Detection carries information only where the unit is occupied
            omega_p_z = omega_p * z_obs
            kappa_p = z_obs * (y_obs - 0.5)

            # -----------------------------------------------------
            # Community hyperparameters
            # -----------------------------------------------------
            if spec.community:
                beta_comm = sample_community_mean(beta, tau_sq_beta, mu_beta, var_beta, rng)
                tau_sq_beta = sample_community_variance(beta, beta_comm, *priors.tau_sq_beta_ig, rng)
                alpha_comm = sample_community_mean(alpha, tau_sq_alpha, mu_alpha, var_alpha, rng)
                tau_sq_alpha = sample_community_variance(alpha, alpha_comm, *priors.tau_sq_alpha_ig, rng)
                beta_mean, beta_prec = beta_comm, np.diag(1.0 / tau_sq_beta)
                alpha_mean, alpha_prec = alpha_comm, np.diag(1.0 / tau_sq_alpha)
            else:
                beta_mean, beta_prec = mu_beta, T0b
                alpha_mean, alpha_prec = mu_alpha, T0a

            # -----------------------------------------------------
            # Update beta and occupancy random effects
            # -----------------------------------------------------
            for sp in range(N):
                beta[sp] = sample_coefficients(X, omega_psi[sp], kappa_psi[sp], re_psi[sp] + sp_unit[sp],
                                               beta_mean, beta_prec, rng)
            xb = beta @ X.T
            if n_re:
                out = update_random_effects(data.X_re, spec.re_starts, beta_star, sigma_sq_psi, omega_psi,
                                            kappa_psi, xb + sp_unit, priors.sigma_sq_psi_ig, rng)
                beta_star, sigma_sq_psi, re_psi = out['values'], out['sigma_sq'], out['contrib']

            # -----------------------------------------------------
            # Update alpha and detection random effects
            # -----------------------------------------------------
            for sp in range(N):
                alpha[sp] = sample_coefficients(X_p, omega_p_z[sp], kappa_p[sp], re_p[sp],
                                                alpha_mean, alpha_prec, rng)
            xa = alpha @ X_p.T
            if n_p_re:
                out = update_random_effects(data.X_p_re, spec.p_re_starts, alpha_star, sigma_sq_p, omega_p_z,
                                            kappa_p, xa, priors.sigma_sq_p_ig, rng)
                alpha_star, sigma_sq_p, re_p = out['values'], out['sigma_sq'], out['contrib']

            # -----------------------------------------------------
            # Update spatial terms
            # -----------------------------------------------------
            offset = xb + re_psi
            if spec.spatial == 'nngp':
                omega_site = _site_sums(V_site, omega_psi)
                lin_site = _site_sums(V_site, kappa_psi - omega_psi * offset)
                for sp in range(N):
                    out = update_nngp_process(w[sp], sigma_sq[sp], phi_pars[sp], nu_pars[sp], *BF[sp], spec.index,
                                              omega_site[sp], lin_site[sp], priors.sigma_sq_ig, spec.cov_model,
                                              rng, f"w[{data.species[sp]}]")
                    w[sp], sigma_sq[sp], BF[sp] = out['w'], out['sigma_sq'], (out['B'], out['F'])
                sp_unit = w[:, site_index]
            elif spec.spatial in ('factor', 'latent'):
                omega_site = _site_sums(V_site, omega_psi)
                lin_site = _site_sums(V_site, kappa_psi - omega_psi * offset)
                if spec.spatial == 'factor':
                    factors = sample_factors(factors, lam, spec.index, [bf[0] for bf in BF], [bf[1] for bf in BF],
                                             omega_site, lin_site, rng)
                else:
                    factors = sample_factors(factors, lam, None, None, None, omega_site, lin_site, rng)
                factors_unit = factors[site_index]
                lam = sample_loadings(lam, factors_unit, omega_psi, kappa_psi, offset, rng)
                if spec.spatial == 'factor':
                    for r in range(q):
                        # factors have unit variance, only their decay is sampled
                        BF[r] = update_decay(factors[:, r], 1.0, phi_pars[r], nu_pars[r], BF[r], spec.index,
                                             spec.cov_model, rng, f"factor[{r}]")
                sp_unit = (factors_unit @ lam.T).T

            eta_psi = offset + sp_unit
            eta_p = xa + re_p

            # -----------------------------------------------------
            # Batch boundary: retune the adaptive proposals
            # -----------------------------------------------------
            if adaptive and i % config.batch_length == 0:
                for par in adaptive:
                    rate = par.end_batch(config.batch_length, config.accept_rate, config.max_delta)
                    logger.debug(f"Chain {chain}, batch {par.batches}: {par.name} acceptance {rate:.2f}, "
                                 f"tuning {par.scale:.4f}")

            # -----------------------------------------------------
            # Store
            # -----------------------------------------------------
            if (i > config.n_burn) and ((i - config.n_burn) % config.n_thin == 0):
                j = (i - config.n_burn) // config.n_thin - 1
                store['beta'][j] = beta
                store['alpha'][j] = alpha
                store['z'][j] = z
                store['psi'][j] = sigmoid(eta_psi)
                if spec.community:
                    store['beta_comm'][j] = beta_comm
                    store['tau_sq_beta'][j] = tau_sq_beta
                    store['alpha_comm'][j] = alpha_comm
                    store['tau_sq_alpha'][j] = tau_sq_alpha
                if n_re:
                    store['beta_star'][j] = beta_star
                    store['sigma_sq_psi'][j] = sigma_sq_psi
                if n_p_re:
                    store['alpha_star'][j] = alpha_star
                    store['sigma_sq_p'][j] = sigma_sq_p
                if spec.spatial == 'nngp':
                    store['w'][j] = w
                    store['sigma_sq'][j] = sigma_sq
                if spec.spatial in ('factor', 'latent'):
                    store['lambda'][j] = lam
                    store['factors'][j] = factors
                    store['w'][j] = lam @ factors.T
                if 'phi' in store:
                    store['phi'][j] = [par.value for par in phi_pars]
                if 'nu' in store:
                    store['nu'][j] = [par.value for par in nu_pars]
    except NumericalInstabilityError as e:
        e.chain, e.iteration = chain, i
        logger.error(f"Chain {chain} failed at iteration {i}: {e.args[0]}")
        raise
    finally:
        if config.verbose:
            iterations.close()

    for arr in store.values():
        arr.setflags(write=False)
    logger.info(f"Chain {chain}: finished {n_iter} iterations, retained {lastit} draws.")
    return ChainSamples(
        chain=chain,
        samples=store,
        acceptance={par.name: np.array(par.acceptance) for par in adaptive},
        tuning={par.name: par.scale for par in adaptive},
    )

# ==============================================================================
# Orchestration
# ==============================================================================

def _run_chains(spec, stop_event=None):
    """Run every chain, in worker processes when n_workers > 1, and collect their samples."""
    config = spec.config
    seeds = np.random.SeedSequence(config.seed).spawn(config.n_chains)
    outcomes = [None] * config.n_chains
    failures = []

    if config.n_workers > 1 and config.n_chains > 1:
        max_workers = min(config.n_workers, config.n_chains)
        logger.info(f"Running {config.n_chains} chains with {max_workers} parallel workers...")
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(run_chain, spec, c, seeds[c], stop_event): c for c in range(config.n_chains)}
            for future in as_completed(futures):
                try:
                    outcomes[futures[future]] = future.result()
                except NumericalInstabilityError as e:
                    e.chain = futures[future]
                    failures.append(e)
    else:
        for c in range(config.n_chains):
            try:
                outcomes[c] = run_chain(spec, c, seeds[c], stop_event)
            except NumericalInstabilityError as e:
                e.chain = c
                failures.append(e)

    completed = [out for out in outcomes if out is not None]
    if failures:
        first = min(failures, key=lambda e: e.chain)
        logger.error(f"{len(failures)} of {config.n_chains} chains failed; first failure in chain {first.chain} "
                     f"at iteration {first.iteration}. {len(completed)} chains completed.")
        first.completed = completed
        raise first
    return completed


def build_model(data, config, priors=None, inits=None):
    """
    Validate configuration, priors and initial values against the data and
    resolve everything chains share. Raises before any chain state exists.
    """
    config = config if config is not None else SamplerConfig()
    priors = (priors if priors is not None else Priors()).validate()
    inits = inits if inits is not None else Inits()
    spatial_cov = config.cov_model if data.coords is not None else None
    config.validate(data.n_sites, spatial=spatial_cov is not None)

    if config.n_factors > 0:
        if not data.multispecies:
            raise InvalidConfigurationError("latent factors require a multi-species model")
        if config.n_factors > data.n_species:
            raise InvalidConfigurationError(
                f"n_factors ({config.n_factors}) cannot exceed the number of species ({data.n_species})"
            )
        spatial = 'factor' if spatial_cov is not None else 'latent'
    else:
        spatial = 'nngp' if spatial_cov is not None else 'none'

    index, phi_bounds = None, None
    if spatial in ('nngp', 'factor'):
        index = build_neighbor_index(data.coords, config.n_neighbors, config.order_by)
        phi_bounds = priors.phi_unif if priors.phi_unif is not None else decay_prior_bounds(data.coords)

    re_starts = np.concatenate([[0], np.cumsum([len(lv) for lv in data.re_levels])]).astype(np.int64)
    p_re_starts = np.concatenate([[0], np.cumsum([len(lv) for lv in data.p_re_levels])]).astype(np.int64)
    resolved = _resolve_inits(inits, data, len(data.re_levels), len(data.p_re_levels), spatial,
                              config.n_factors, phi_bounds, priors.nu_unif)

    glm_beta, glm_alpha = initial_coefficients(data)
    return ModelSpec(
        data=data, config=config, priors=priors, inits=resolved,
        community=data.multispecies, spatial=spatial, cov_model=spatial_cov if spatial in ('nngp', 'factor') else None,
        index=index, phi_bounds=phi_bounds, re_starts=re_starts, p_re_starts=p_re_starts,
        glm_beta=glm_beta, glm_alpha=glm_alpha,
    )


def fit_model(data, config=None, priors=None, inits=None, stop_event=None):
    """Fit a prepared OccupancyData. Runs k-fold cross-validation afterwards when config.k_fold is set."""
    spec = build_model(data, config, priors, inits)
    config = spec.config
    logger.info(
        f"Initializing occupancy sampler with species={data.n_species}, sites={data.n_sites}, "
        f"units={data.n_units}, observed cells={data.n_obs}, spatial={spec.spatial}, "
        f"chains={config.n_chains}, iterations={config.n_iter}, retained per chain={config.n_samples}"
    )
    result = FitResult(spec=spec, chains=_run_chains(spec, stop_event))

    if config.k_fold is not None:
        from occupancy_module.assessment import k_fold_cv
        result.k_fold = k_fold_cv(data, config, spec.priors, inits)
    return result


def fit_occupancy(y, covariates=None, config=None, coords=None, priors=None, inits=None, stop_event=None):
    """
    Fit a single-species occupancy model.

    :param y: (J, K) or multi-season (J, T, K) detection/non-detection array, NaN for missing
    :param covariates: Covariates (intercept-only when None)
    :param config: SamplerConfig
    :param coords: Optional (J, 2) coordinates; adds an NNGP spatial random effect
    :param priors: Priors
    :param inits: Inits
    :param stop_event: Optional event checked between iterations; with n_workers > 1
        it must be shareable across processes, e.g. multiprocessing.Manager().Event()
    :return: FitResult
    """
    data = prepare_data(y, covariates, coords=coords)
    return fit_model(data, config, priors, inits, stop_event)


def fit_ms_occupancy(y, covariates=None, config=None, coords=None, priors=None, inits=None, species=None,
                     stop_event=None):
    """
    Fit a multi-species (community) occupancy model.

    With coords and config.n_factors > 0 this is the spatial factor model;
    with coords and no factors each species gets its own NNGP field; without
    coords, n_factors > 0 gives iid latent factors.

    :param y: (N, J, K) or (N, J, T, K) detection/non-detection array
    :param species: Optional species names
    """
    data = prepare_data(y, covariates, coords=coords, multispecies=True, species=species)
    return fit_model(data, config, priors, inits, stop_event)

# ==============================================================================
# Prediction
# ==============================================================================

def _random_effect_draws(values, starts, codes):
    """(S, N, rows) summed random intercepts; unseen levels (code -1) contribute 0."""
    total = 0.0
    for r in range(codes.shape[1]):
        known = codes[:, r] >= 0
        draws = values[:, :, starts[r] + np.where(known, codes[:, r], 0)]
        total = total + np.where(known, draws, 0.0)
    return total


def _spatial_draws(result, coords_0, n_sites_0, rng):
    """(S, N, J0) draws of the spatial term at new sites."""
    spec = result.spec
    S, N = result.n_chains * result.n_samples, result.data.n_species
    if spec.spatial == 'none':
        return np.zeros((S, N, n_sites_0))
    if spec.spatial == 'latent':
        f0 = rng.standard_normal((S, n_sites_0, spec.n_factors))
        return np.einsum('sjq,siq->sij', f0, result.samples('lambda'))
    if coords_0 is None:
        raise InvalidInputError("coordinates of the new sites are required for a spatial model")
    coords_0 = check_coords(coords_0)
    if coords_0.shape[0] != n_sites_0:
        raise InvalidInputError(f"got {coords_0.shape[0]} coordinates for {n_sites_0} new sites")
    nn_idx, dist_to, dist_among = nearest_fitted_neighbors(result.data.coords, coords_0, spec.config.n_neighbors)
    phi = result.samples('phi')
    nu = result.samples('nu') if 'nu' in result.names else None
    if spec.spatial == 'nngp':
        w0 = np.empty((S, N, n_sites_0))
        for sp in range(N):
            w0[:, sp] = krige_nngp(result.samples('w')[:, sp], result.samples('sigma_sq')[:, sp], phi[:, sp],
                                   None if nu is None else nu[:, sp], spec.cov_model,
                                   nn_idx, dist_to, dist_among, rng)
        return w0
    factors = result.samples('factors')
    f0 = np.empty((S, n_sites_0, spec.n_factors))
    for r in range(spec.n_factors):
        f0[:, :, r] = krige_nngp(factors[:, :, r], np.ones(S), phi[:, r], None if nu is None else nu[:, r],
                                 spec.cov_model, nn_idx, dist_to, dist_among, rng)
    return np.einsum('sjq,siq->sij', f0, result.samples('lambda'))


def occupancy_predictor(result, X_0, X_re_0, site_index_0, n_sites_0, coords_0, rng):
    """
    Posterior draws of the occupancy linear predictor at new units.

    :return: (eta (S, N, n_units_0), spatial term at the new sites (S, N, n_sites_0))
    """
    spec = result.spec
    eta = np.einsum('up,sip->siu', X_0, result.samples('beta'))
    if X_re_0.shape[1]:
        eta += _random_effect_draws(result.samples('beta_star'), spec.re_starts, X_re_0)
    w_0 = _spatial_draws(result, coords_0, n_sites_0, rng)
    eta += w_0[:, :, site_index_0]
    return eta, w_0


def detection_predictor(result, X_p_0, X_p_re_0):
    """(S, N, n_obs_0) posterior draws of the detection linear predictor."""
    eta = np.einsum('op,sip->sio', X_p_0, result.samples('alpha'))
    if X_p_re_0.shape[1]:
        eta += _random_effect_draws(result.samples('alpha_star'), result.spec.p_re_starts, X_p_re_0)
    return eta


def _check_names(names_0, names, label):
    if names_0 != names:
        raise InvalidInputError(f"{label} covariates {names_0} do not match the fitted model's {names}")


def _unseen_levels(codes, label):
    if np.any(codes < 0):
        logger.warning(f"{np.sum(np.any(codes < 0, axis=1))} rows have {label} random-effect levels not in the "
                       f"fitted data; those effects contribute 0.")


def predict(result, covariates_0=None, coords_0=None, n_sites=None, n_seasons=1, seed=None):
    """
    Posterior predictive occupancy at new sites.

    Random-effect levels not present in the fitted data contribute nothing
    (unstructured effects cannot extrapolate); spatial effects are kriged from
    the fitted sites' draws with the NNGP predictive.

    :param covariates_0: Covariates of the new sites (same names as the fit)
    :param coords_0: (J0, 2) coordinates, required for spatial models
    :param n_sites: Number of new sites (inferred from coords or covariates when None)
    :param n_seasons: Seasons per new site
    :return: A Dictionary with psi, z and w draws, shaped (S, [N,] units/sites)
    """
    rng = np.random.default_rng(seed)
    covariates_0 = covariates_0 if covariates_0 is not None else Covariates()
    if n_sites is None:
        if coords_0 is not None:
            n_sites = np.asarray(coords_0).shape[0]
        else:
            arrays = list(covariates_0.occ_site.values()) + list(covariates_0.occ_site_season.values())
            if not arrays:
                raise InvalidInputError("n_sites is required when neither coordinates nor covariates are given")
            n_sites = arrays[0].shape[0]

    X_0 = occupancy_design(covariates_0, n_sites, n_seasons)
    _check_names(covariates_0.occ_names, result.data.covariates.occ_names, "occupancy")
    layout = make_occupancy_arrays(np.zeros((n_sites, n_seasons, 1)) if n_seasons > 1 else np.zeros((n_sites, 1)))
    if sorted(covariates_0.occ_random) != sorted(result.data.covariates.occ_random):
        raise InvalidInputError("occupancy random effects do not match the fitted model")
    ordered = {name: covariates_0.occ_random[name] for name in result.data.covariates.occ_random}
    vals = _random_effect_values(ordered, layout, None, per_obs=False)
    X_re_0 = np.column_stack([encode_levels(v, lv) for v, lv in zip(vals, result.data.re_levels)]) \
        if vals else np.zeros((X_0.shape[0], 0), dtype=np.int64)
    _unseen_levels(X_re_0, "occupancy")

    eta, w_0 = occupancy_predictor(result, X_0, X_re_0, layout['site_index'], n_sites, coords_0, rng)
    psi = sigmoid(eta)
    out = {'psi': psi, 'z': rng.binomial(1, psi).astype(np.int8)}
    if result.spec.spatial != 'none':
        out['w'] = w_0
    if not result.data.multispecies:
        out = {k: v[:, 0] for k, v in out.items()}
    return out


def predict_detection(result, covariates_0=None, obs_shape=None):
    """
    Posterior detection probabilities for a new survey design.

    :param covariates_0: Detection covariates shaped for obs_shape
    :param obs_shape: (J0, K) or (J0, T, K)
    :return: (S, [N,] *obs_shape) draws of p
    """
    covariates_0 = covariates_0 if covariates_0 is not None else Covariates()
    if obs_shape is None:
        raise InvalidInputError("obs_shape is required")
    _check_names(covariates_0.det_names, result.data.covariates.det_names, "detection")
    if sorted(covariates_0.det_random) != sorted(result.data.covariates.det_random):
        raise InvalidInputError("detection random effects do not match the fitted model")
    obs_shape = tuple(obs_shape)
    layout = make_occupancy_arrays(np.zeros(obs_shape))
    X_p_0 = detection_design(covariates_0, layout, obs_shape)
    ordered = {name: covariates_0.det_random[name] for name in result.data.covariates.det_random}
    vals = _random_effect_values(ordered, layout, obs_shape, per_obs=True)
    X_p_re_0 = np.column_stack([encode_levels(v, lv) for v, lv in zip(vals, result.data.p_re_levels)]) \
        if vals else np.zeros((X_p_0.shape[0], 0), dtype=np.int64)
    _unseen_levels(X_p_re_0, "detection")

    p = sigmoid(detection_predictor(result, X_p_0, X_p_re_0))
    p = p.reshape(p.shape[:2] + obs_shape)
    return p if result.data.multispecies else p[:, 0]
