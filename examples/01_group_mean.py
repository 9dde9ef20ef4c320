import numpy as np
from empirical_peb import Unit, invoke

# Eight subjects, each with a fitted 3-parameter model (prior N(0, I)).
rng = np.random.default_rng(0)
true_group = np.array([1.0, -0.5, 0.2])

units = []
for i in range(8):
    Ep = true_group + 0.3 * rng.normal(size=3) + 0.1 * rng.normal(size=3)
    units.append(
        Unit.create(
            prior_mean=np.zeros(3),
            prior_cov=np.eye(3),
            post_mean=Ep,
            post_cov=0.01 * np.eye(3),
            evidence=-12.0,
            name=f"subject {i + 1}",
        )
    )

result, updated = invoke(units)
print(result.summary(digits=2))

# Subject-level estimates after borrowing strength from the group.
for u0, u1 in zip(units, updated):
    print(f"{u0.name:>12s}: {u0.post_mean[0]: .3f} -> {u1.post_mean[0]: .3f}")
