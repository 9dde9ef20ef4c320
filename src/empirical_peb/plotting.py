from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple

import numpy as np

from .util import normal_ppf


def plot_peb(
    result: Any,
    *,
    ax: Optional[Any] = None,
    covariate: Any = 0,
    ci: float = 0.90,
    bar_kwargs: Optional[Mapping[str, Any]] = None,
    err_kwargs: Optional[Mapping[str, Any]] = None,
    title: Optional[str | bool] = None,
) -> Tuple[Any, Any]:
    """Bar plot of one covariate's group effects with credible intervals.

    Parameters
    ----------
    result : PEBResult
    ax : matplotlib.axes.Axes, optional
        If None, a new figure/axes is created.
    covariate : int or str
        Which design-matrix column to show.
    ci : float
        Central credible interval drawn as error bars (default 90%).
    bar_kwargs, err_kwargs : dict, optional
        Styling kwargs for bar and errorbar.
    title : str or bool, optional
        Axes title; defaults to the covariate name, False disables it.
    """
    import matplotlib.pyplot as plt

    if not 0.0 < float(ci) < 1.0:
        raise ValueError("ci must be in (0, 1).")

    if ax is None:
        fig, ax = plt.subplots()
    else:
        fig = ax.figure

    bar_kwargs = dict(bar_kwargs or {})
    err_kwargs = dict(err_kwargs or {})

    if isinstance(covariate, str):
        k = result.covariate_names.index(covariate)
    else:
        k = int(covariate)
    mean, cov = result.effects(k)
    half = normal_ppf(0.5 + 0.5 * float(ci)) * np.sqrt(np.clip(np.diag(cov), 0.0, np.inf))

    pos = np.arange(mean.shape[0])
    bar_kwargs.setdefault("color", "0.7")
    ax.bar(pos, mean, **bar_kwargs)
    err_kwargs.setdefault("fmt", "none")
    err_kwargs.setdefault("ecolor", "k")
    err_kwargs.setdefault("capsize", 2)
    ax.errorbar(pos, mean, yerr=half, **err_kwargs)

    ax.set_xticks(pos)
    ax.set_xticklabels(result.parameter_labels, rotation=45, ha="right")
    ax.axhline(0.0, color="k", lw=0.5)
    ax.set_ylabel("effect size")
    if title is not False:
        ax.set_title(title if isinstance(title, str) else result.covariate_names[k])
    return fig, ax
