from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
import time

import numpy as np

from .config import FIELD_NAMES, N_FIELDS, TransportConfig, read_transport_config
from .diagnostics import DataCollection, DiagnosticTable
from .integrators import make_ode_solver
from .transport import TransportOperator
from .verbose import make_emit


def _now() -> float:
    return time.perf_counter()


def _emit(msg: str, *, level: int, args: argparse.Namespace) -> None:
    verbose = int(getattr(args, "verbose", 0) or 0)
    quiet = bool(getattr(args, "quiet", False))
    if quiet:
        return
    if verbose >= level:
        print(msg)


def _emit_config_summary(*, cfg: TransportConfig, args: argparse.Namespace) -> None:
    _emit("----------------------------------------------------------------", level=0, args=args)
    _emit(" transport input summary", level=0, args=args)
    _emit(
        f" mesh: nElements={cfg.mesh.n_elements} x=[{cfg.mesh.x_min}, {cfg.mesh.x_max}]"
        f" order={cfg.dg.order} sigma={cfg.dg.sigma} kappa={cfg.dg.penalty}",
        level=0,
        args=args,
    )
    for i in range(N_FIELDS):
        state = "enabled" if cfg.field_enabled(i) else "dummy"
        _emit(f" field {i} {FIELD_NAMES[i]}: {state} initial={cfg.initial[i]}", level=0, args=args)
        c = cfg.coefficients[i]
        if c.diffusion is not None or c.advection is not None or c.source is not None:
            _emit(f"   overrides: diffusion={c.diffusion} advection={c.advection} source={c.source}", level=1, args=args)
        for bc in c.dirichlet:
            _emit(f"   dirichlet attrs={bc.resolved_attrs()} value={bc.value}", level=1, args=args)
        for bc in c.neumann:
            _emit(f"   neumann attrs={bc.resolved_attrs()} value={bc.value}", level=1, args=args)
    s = cfg.solver
    _emit(
        f" solver: newtonRelTol={s.newton_rel_tol} newtonMaxIter={s.newton_max_iter}"
        f" krylovTol={s.krylov_tol} krylovMaxIter={s.krylov_max_iter} restart={s.krylov_restart}"
        f" jacobianRefresh={s.jacobian_refresh}",
        level=0,
        args=args,
    )
    _emit(f" time: dt={cfg.time.dt} tFinal={cfg.time.t_final} odeSolver={cfg.time.ode_solver}", level=0, args=args)
    _emit(f" output: file={cfg.output.file} cadence={cfg.output.cadence}", level=1, args=args)


def _emit_runtime_info(*, args: argparse.Namespace) -> None:
    import jax  # noqa: PLC0415

    _emit(f" jax={jax.__version__} backend={jax.default_backend()} devices={jax.devices()}", level=2, args=args)


def _cmd_summary(args: argparse.Namespace) -> int:
    cfg = read_transport_config(Path(args.input))
    _emit(f" input={Path(args.input).resolve()}", level=0, args=args)
    _emit_config_summary(cfg=cfg, args=args)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    t0 = _now()
    cfg = read_transport_config(Path(args.input))
    if args.t_final is not None:
        cfg = replace(cfg, time=replace(cfg.time, t_final=float(args.t_final)))
    if args.dt is not None:
        cfg = replace(cfg, time=replace(cfg.time, dt=float(args.dt)))
    if args.ode_solver is not None:
        cfg = replace(cfg, time=replace(cfg.time, ode_solver=str(args.ode_solver)))

    _emit("################################################################", level=0, args=args)
    _emit(" dg-transport run", level=0, args=args)
    _emit(f" input={Path(args.input).resolve()}", level=0, args=args)
    _emit_config_summary(cfg=cfg, args=args)
    _emit_runtime_info(args=args)

    emit = make_emit(verbose=int(args.verbose), quiet=bool(args.quiet), prefix=" ")
    space = cfg.build_space()
    op = TransportOperator(space, cfg, emit=emit)
    ode = make_ode_solver(cfg.time.ode_solver)
    ode.init(op)

    table = DiagnosticTable([fop.vis_flag for fop in op.combined.operators])
    dc = DataCollection(name=Path(args.input).stem, coordinates=np.asarray(space.x_nodes).reshape(-1))

    x = op.initial_state()
    t = 0.0
    dt = float(cfg.time.dt)
    t_final = float(cfg.time.t_final)
    if dt <= 0.0:
        raise ValueError(f"time step must be positive, got {dt}")
    cadence = max(int(cfg.output.cadence), 1)

    op.set_time(t)
    dc.register_fields(0, t, op.prepare_data_fields(x, table))
    cycle = 0
    last_saved = 0
    while t < t_final * (1.0 - 1e-12):
        dt_use = min(dt, t_final - t)
        x, t = ode.step(x, t, dt_use)
        cycle += 1
        res = op.last_result
        if res is not None:
            _emit(
                f" cycle={cycle} t={t:.6e} newton_iters={res.n_newton} residual_norm={res.residual_norm:.6e}"
                f" converged={res.converged}",
                level=0,
                args=args,
            )
        if cycle % cadence == 0:
            dc.register_fields(cycle, t, op.prepare_data_fields(x, table))
            last_saved = cycle
    if last_saved != cycle:
        dc.register_fields(cycle, t, op.prepare_data_fields(x, table))

    out = args.out if args.out is not None else cfg.output.file
    if out:
        path = dc.save(Path(out))
        _emit(f" wrote {len(dc.snapshots)} snapshots -> {path}", level=0, args=args)
    _emit(f" elapsed_s={_now()-t0:.3f}", level=1, args=args)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="dg-transport")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (repeatable).")
    parser.add_argument("-q", "--quiet", action="store_true", help="Reduce output to a minimum.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Advance the transport system to tFinal and write snapshots.")
    p_run.add_argument("--input", required=True, help="Path to the input namelist")
    p_run.add_argument("--out", default=None, help="HDF5 output file (default: &output file)")
    p_run.add_argument("--t-final", default=None, help="Override &time tFinal")
    p_run.add_argument("--dt", default=None, help="Override &time dt")
    p_run.add_argument("--ode-solver", default=None, help="Override &time odeSolver (backward_euler, sdirk23)")
    p_run.set_defaults(func=_cmd_run)

    p_sum = sub.add_parser("summary", help="Print the parsed configuration.")
    p_sum.add_argument("--input", required=True, help="Path to the input namelist")
    p_sum.set_defaults(func=_cmd_summary)

    args = parser.parse_args(argv)
    return int(args.func(args))
