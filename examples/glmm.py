"""
Binomial GLMM with crossed random intercepts.

eta = X beta + Z_1 b_1 + Z_2 b_2, with independent N(0, sigma_k^2) effects.
"""

from scipy import sparse

from laplace_gmrf import (
    Binomial,
    IIDPrecision,
    LaplaceApproximation,
    LatentComponent,
    LatentGaussianModel,
    LinkMap,
    build_iid_structure,
    generate_grouped_data,
    indicator_design,
)

print("Generating data...")
data = generate_grouped_data(n_obs=500, n_levels=(15, 10), trials=5, seed=11)

Z1, _ = indicator_design(data['groups'][:, 0])
Z2, _ = indicator_design(data['groups'][:, 1])
structure = build_iid_structure([Z1.shape[1], Z2.shape[1]])

print("Building model...")
effects = LatentComponent('groups', IIDPrecision(structure), LinkMap(sparse.hstack([Z1, Z2])))
model = LatentGaussianModel(Binomial(data['y'], data['trials']), [effects], design=data['X'])

print("Fitting model...")
laplace = LaplaceApproximation(model)
laplace.fit(verbose=True, print_every=10)
print(laplace.get_convergence_summary())

rep = laplace.sdreport()
print(rep.summary())
print(f"\nTrue beta:   {data['beta']}")
print(f"True sigmas: {data['sigmas']}")
