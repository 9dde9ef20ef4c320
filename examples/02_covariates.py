import numpy as np
import matplotlib.pyplot as plt
from empirical_peb import PEBConfig, Unit, invoke, plot_peb

# A named parameter layout: two connection strengths and one time constant.
rng = np.random.default_rng(1)
age = rng.uniform(-1.0, 1.0, size=16)

pE = {"A": np.zeros(2), "tau": 0.0}
pC = {"A": np.ones(2), "tau": 0.25}

units = []
for a in age:
    Ep = {
        "A": np.array([0.6 + 0.4 * a, -0.3]) + 0.1 * rng.normal(size=2),
        "tau": 0.1 * rng.normal(),
    }
    units.append(Unit.create(pE, pC, Ep, 0.01 * np.eye(3)))

X = np.column_stack([np.ones_like(age), age - age.mean()])
config = PEBConfig(components="fields").with_design(X, ["Mean", "Age"])

# Only the connection strengths go to the group level.
result, _ = invoke(units, config, fields="A")
print(result.summary())
print("Age effect on A[0]:", result["Age: A[0]"].value, "±", result["Age: A[0]"].stderr)

fig, axs = plt.subplots(1, 2, figsize=(8, 3), constrained_layout=True)
plot_peb(result, ax=axs[0], covariate="Mean")
plot_peb(result, ax=axs[1], covariate="Age")
plt.show()
