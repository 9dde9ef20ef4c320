import numpy as np
from empirical_peb import PEBConfig, Unit, invoke

# Three sites, each with its own group of subjects. Every site result is a
# unit in its own right, so the sites can be pooled at a third level.
rng = np.random.default_rng(2)


def site(offset, n=6):
    units = []
    for _ in range(n):
        Ep = np.array([1.0 + offset, 0.5]) + 0.2 * rng.normal(size=2)
        units.append(Unit.create(np.zeros(2), np.eye(2), Ep, 0.02 * np.eye(2)))
    return units


sites = []
for offset in (-0.2, 0.0, 0.3):
    result, _ = invoke(site(offset), PEBConfig(components="all"))
    sites.append(result)
    print(f"site mean P0 = {result['Covariate 1: P0'].value:.3f}  F = {result.F:.2f}")

top, updated_sites = invoke(sites)
print(top.summary())
