import numpy as np
from empirical_peb import ColumnFailure, invoke

# Rows are subjects, columns are alternative models fitted to each subject.
# Models are loaded on demand from a dict of records keyed by identifier.
rng = np.random.default_rng(3)

records = {}
grid = []
for s in range(6):
    row = []
    for m, n in enumerate((2, 3)):
        key = f"sub-{s:02d}/model-{m}"
        records[key] = {
            "M": {"pE": np.zeros(n), "pC": np.ones(n)},
            "Ep": 0.5 + 0.2 * rng.normal(size=n),
            "Cp": 0.02 * np.eye(n),
            "F": -10.0 - m,
        }
        row.append(key)
    grid.append(row)

results, updated = invoke(grid, source=records, parallel="auto")
for j, res in enumerate(results):
    if isinstance(res, ColumnFailure):
        print("failed:", res)
    else:
        print(f"model {j}: F = {res.F:.2f}, group mean = {np.round(res.effects(0)[0], 3)}")
