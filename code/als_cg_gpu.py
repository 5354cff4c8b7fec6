# -*- coding: utf-8 -*-
from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import torch

LANE_WIDTH = 32          # CUDA warp size
GROUPS_PER_UNIT = 32     # thread-groups launched per multiprocessor / cpu thread
BYTES_PER_NNZ = 12       # int64 key + float32 value


# =========================
# Errors
# =========================
class AcceleratorError(RuntimeError):
    """Allocation, transfer or compute failure on the device. Not recoverable."""


class OptionError(ValueError):
    """Unreadable or malformed option source."""


@contextmanager
def _device_op(what: str):
    try:
        yield
    except AcceleratorError:
        raise
    except (RuntimeError, MemoryError) as e:
        raise AcceleratorError(f"{what} failed: {e}") from e


def _device_barrier(device: torch.device) -> None:
    if device.type == "cuda":
        torch.cuda.synchronize(device)


# =========================
# Options
# =========================
@dataclass
class ALSOption:
    compute_loss_on_training: bool = True
    adaptive_reg: bool = False
    d: int = 20
    num_cg_max_iters: int = 3
    alpha: float = 8.0
    reg_u: float = 0.1
    reg_i: float = 0.1
    cg_tolerance: float = 1e-10
    eps: float = 1e-10
    num_iters: int = 10
    batch_mb: float = 256.0
    device: Optional[str] = None
    seed: int = 42
    num_groups: int = 0
    lane_width: int = LANE_WIDTH


def _coerce_option(name: str, value, default):
    if name == "device":
        if value is None or isinstance(value, str):
            return value
        raise OptionError(f"option '{name}' must be a string, got {value!r}")
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        raise OptionError(f"option '{name}' must be a boolean, got {value!r}")
    if isinstance(value, bool):
        raise OptionError(f"option '{name}' must be numeric, got {value!r}")
    if isinstance(default, int):
        if isinstance(value, int):
            return value
        raise OptionError(f"option '{name}' must be an integer, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    raise OptionError(f"option '{name}' must be a number, got {value!r}")


def load_option(src: Union[str, Dict]) -> ALSOption:
    """Build an ALSOption from a JSON file path or an already parsed dict.

    Unknown keys are ignored. Raises OptionError on unreadable input, wrong
    value types or out-of-range values.
    """
    if isinstance(src, dict):
        raw = src
    else:
        try:
            with open(src, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise OptionError(f"cannot read option file {src}: {e}") from e
    if not isinstance(raw, dict):
        raise OptionError("option source must be a JSON object")

    opt = ALSOption()
    for fd in fields(ALSOption):
        if fd.name in raw:
            setattr(opt, fd.name, _coerce_option(fd.name, raw[fd.name], getattr(opt, fd.name)))

    if opt.d <= 0:
        raise OptionError(f"d must be positive, got {opt.d}")
    if opt.lane_width <= 0:
        raise OptionError(f"lane_width must be positive, got {opt.lane_width}")
    if opt.num_cg_max_iters < 0 or opt.num_groups < 0 or opt.num_iters < 0:
        raise OptionError("num_cg_max_iters, num_groups and num_iters must be non-negative")
    if opt.cg_tolerance < 0 or opt.eps < 0:
        raise OptionError("cg_tolerance and eps must be non-negative")
    if opt.batch_mb <= 0:
        raise OptionError(f"batch_mb must be positive, got {opt.batch_mb}")
    return opt


def padded_dim(d: int, lane_width: int = LANE_WIDTH) -> int:
    return (d + lane_width - 1) // lane_width * lane_width


def default_num_groups(device: torch.device) -> int:
    if device.type == "cuda":
        units = torch.cuda.get_device_properties(device).multi_processor_count
    else:
        units = torch.get_num_threads()
    return max(1, units * GROUPS_PER_UNIT)


# =========================
# Interaction data (host side)
# =========================
@dataclass
class InteractionBatch:
    """Compressed rows [start_x, next_x) of one axis; indptr starts at 0."""
    indptr: np.ndarray
    keys: np.ndarray
    vals: np.ndarray

    @property
    def n_rows(self) -> int:
        return int(self.indptr.shape[0]) - 1

    @property
    def nnz(self) -> int:
        return int(self.keys.shape[0])

    def validate(self, n_rows: int, n_keys: int) -> None:
        if self.indptr.ndim != 1 or self.n_rows != n_rows:
            raise ValueError(f"batch covers {self.n_rows} rows, expected {n_rows}")
        if self.keys.shape != self.vals.shape or self.keys.ndim != 1:
            raise ValueError("keys and vals must be 1-d arrays of equal length")
        if int(self.indptr[0]) != 0 or int(self.indptr[-1]) != self.nnz:
            raise ValueError("indptr must start at 0 and end at nnz")
        if np.any(np.diff(self.indptr) < 0):
            raise ValueError("indptr must be non-decreasing")
        if self.nnz and (int(self.keys.min()) < 0 or int(self.keys.max()) >= n_keys):
            raise ValueError(f"keys must lie in [0, {n_keys})")


@dataclass
class CSRMatrix:
    indptr: np.ndarray
    keys: np.ndarray
    vals: np.ndarray
    n_rows: int
    n_cols: int

    @classmethod
    def from_triplets(
        cls,
        rows: np.ndarray,
        cols: np.ndarray,
        vals: np.ndarray,
        n_rows: int,
        n_cols: int,
    ) -> "CSRMatrix":
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        vals = np.asarray(vals, dtype=np.float32)
        order = np.argsort(rows, kind="stable")
        counts = np.bincount(rows, minlength=n_rows)
        indptr = np.zeros(n_rows + 1, dtype=np.int64)
        np.cumsum(counts, out=indptr[1:])
        return cls(indptr, cols[order], vals[order], n_rows, n_cols)

    def transpose(self) -> "CSRMatrix":
        rows = np.repeat(np.arange(self.n_rows, dtype=np.int64), np.diff(self.indptr))
        return CSRMatrix.from_triplets(self.keys, rows, self.vals, self.n_cols, self.n_rows)

    def batch(self, start: int, end: int) -> InteractionBatch:
        beg, fin = int(self.indptr[start]), int(self.indptr[end])
        return InteractionBatch(
            indptr=self.indptr[start:end + 1] - beg,
            keys=self.keys[beg:fin],
            vals=self.vals[beg:fin],
        )


def plan_row_batches(indptr: np.ndarray, max_nnz: int) -> List[Tuple[int, int]]:
    """Split rows into contiguous ranges holding at most max_nnz nonzeros each.

    A single row larger than the budget still gets a range of its own.
    """
    n_rows = int(indptr.shape[0]) - 1
    out: List[Tuple[int, int]] = []
    start = 0
    while start < n_rows:
        end = int(np.searchsorted(indptr, indptr[start] + max_nnz, side="right")) - 1
        end = min(max(end, start + 1), n_rows)
        out.append((start, end))
        start = end
    return out


def read_triplets(paths: List[str]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    us: List[int] = []
    its: List[int] = []
    vs: List[float] = []
    for p in paths:
        with open(p, "r", encoding="utf-8", errors="ignore") as f:
            for line in f:
                a = line.rstrip("\n").split("\t")
                if len(a) < 3:
                    continue
                us.append(int(a[0])); its.append(int(a[1])); vs.append(float(a[2]))
    return (
        np.asarray(us, dtype=np.int64),
        np.asarray(its, dtype=np.int64),
        np.asarray(vs, dtype=np.float32),
    )


def init_factors(n_rows: int, d: int, vdim: int, seed: int, std: float = 0.01) -> np.ndarray:
    rng = np.random.default_rng(seed)
    out = np.zeros((n_rows, vdim), dtype=np.float32)
    out[:, :d] = rng.normal(0.0, std, size=(n_rows, d))
    return out


# =========================
# Gram matrix / loss accumulator / device buffers
# =========================
def compute_gram(A: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
    with _device_op("gram matrix"):
        torch.matmul(A.t(), A, out=out)
        _device_barrier(out.device)
    return out


class LossAccumulator:
    """Per-group partial sums of the loss numerator and denominator."""

    def __init__(self, num_groups: int, device: torch.device):
        self.nume = torch.zeros(num_groups, dtype=torch.float64, device=device)
        self.deno = torch.zeros(num_groups, dtype=torch.float64, device=device)

    def add(
        self,
        groups: torch.Tensor,
        nume: Optional[torch.Tensor] = None,
        deno: Optional[torch.Tensor] = None,
    ) -> None:
        if nume is not None:
            self.nume.index_add_(0, groups, nume.to(torch.float64))
        if deno is not None:
            self.deno.index_add_(0, groups, deno.to(torch.float64))

    def reduce(self) -> Tuple[float, float]:
        _device_barrier(self.nume.device)
        return float(self.nume.sum().item()), float(self.deno.sum().item())


class DeviceBuffers:
    """Device-resident P, Q and FF mirrored from host arrays.

    axis False is P (users), axis True is Q (items).
    """

    def __init__(self, device: torch.device, P_host: np.ndarray, Q_host: np.ndarray):
        self.device = device
        self.host = {False: P_host, True: Q_host}
        vdim = P_host.shape[1]
        with _device_op("allocating factor buffers"):
            self.P = torch.empty(P_host.shape, dtype=torch.float32, device=device)
            self.Q = torch.empty(Q_host.shape, dtype=torch.float32, device=device)
            self.FF = torch.zeros((vdim, vdim), dtype=torch.float32, device=device)
        self.upload(False)
        self.upload(True)

    def factors(self, axis: bool) -> torch.Tensor:
        return self.Q if axis else self.P

    def upload(self, axis: bool) -> None:
        with _device_op("host to device copy"):
            self.factors(axis).copy_(torch.from_numpy(self.host[axis]))
            _device_barrier(self.device)

    def download(self, axis: bool) -> None:
        with _device_op("device to host copy"):
            np.copyto(self.host[axis], self.factors(axis).cpu().numpy())
            _device_barrier(self.device)

    def stage_batch(self, batch: InteractionBatch) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        with _device_op(f"staging batch of {batch.nnz} nonzeros"):
            indptr = torch.tensor(batch.indptr, dtype=torch.int64, device=self.device)
            keys = torch.tensor(batch.keys, dtype=torch.int64, device=self.device)
            vals = torch.tensor(batch.vals, dtype=torch.float32, device=self.device)
            _device_barrier(self.device)
        return indptr, keys, vals

    def alloc_loss(self, num_groups: int) -> LossAccumulator:
        with _device_op("allocating loss accumulators"):
            return LossAccumulator(num_groups, self.device)

    def release(self) -> None:
        del self.P, self.Q, self.FF
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


# =========================
# CG least-squares kernel
# =========================
@dataclass
class CGScratch:
    Ap: torch.Tensor
    r: torch.Tensor
    p: torch.Tensor
    gradient: torch.Tensor

    @classmethod
    def zeros(cls, n_rows: int, vdim: int, device: torch.device) -> "CGScratch":
        return cls(*(torch.zeros((n_rows, vdim), dtype=torch.float32, device=device) for _ in range(4)))


def _gather_segments(
    indptr: torch.Tensor,
    keys: torch.Tensor,
    vals: torch.Tensor,
    local: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    # seg[j] = position within the wave of the row owning nonzero j
    beg = indptr[local]
    cnt = indptr[local + 1] - beg
    seg = torch.repeat_interleave(torch.arange(local.shape[0], device=local.device), cnt)
    offs = torch.cumsum(cnt, 0) - cnt
    pos = beg[seg] + torch.arange(seg.shape[0], device=local.device) - offs[seg]
    return cnt, seg, keys[pos], vals[pos]


def _rows_dot(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return (a * b).sum(dim=-1)


def least_squares_cg(
    X: torch.Tensor,
    Y: torch.Tensor,
    FF: torch.Tensor,
    indptr: torch.Tensor,
    keys: torch.Tensor,
    vals: torch.Tensor,
    start_x: int,
    next_x: int,
    opt: ALSOption,
    reg: float,
    axis: bool,
    num_groups: int,
    loss: Optional[LossAccumulator] = None,
) -> torch.Tensor:
    """Update rows [start_x, next_x) of X in place by per-row CG solves.

    Batch row i belongs to group i % num_groups and each group takes its
    rows in order, so one wave holds at most one row per group. Returns the
    number of CG update steps taken by every row of the batch.
    """
    device = X.device
    n = next_x - start_x
    vdim = X.shape[1]
    n_iters = torch.zeros(n, dtype=torch.int64, device=device)

    for wave in range(0, n, num_groups):
        local = torch.arange(wave, min(wave + num_groups, n), device=device)
        groups = local % num_groups
        rows = local + start_x
        cnt, seg, k, w = _gather_segments(indptr, keys, vals, local)
        Yk = Y[k]
        cw = opt.alpha * w
        filled = cnt > 0

        x = X[rows]
        s = CGScratch.zeros(local.shape[0], vdim, device)

        ada_reg = cnt.to(torch.float32) if opt.adaptive_reg else torch.ones_like(cnt, dtype=torch.float32)
        ada_reg = ada_reg * reg

        # gradient of the implicit objective around the current estimate
        ffx = x @ FF.t()
        dots = _rows_dot(x[seg], Yk)
        s.gradient.copy_(-ffx - ada_reg.unsqueeze(1) * x)
        s.gradient.index_add_(0, seg, (1.0 + cw * (1.0 - dots)).unsqueeze(1) * Yk)

        if loss is not None and axis:
            nume = _rows_dot(x, ffx)
            nume = nume.index_add(0, seg, (1.0 + cw) * (dots - 1.0) ** 2 - dots ** 2)
            deno = torch.zeros_like(nume).index_add_(0, seg, cw)
            zero = torch.zeros_like(nume)
            loss.add(groups, torch.where(filled, nume, zero), torch.where(filled, deno, zero))

        s.r.copy_(s.gradient)
        s.p.copy_(s.gradient)
        rr = _rows_dot(s.r, s.r)
        active = filled & (rr >= opt.cg_tolerance)
        steps = torch.zeros_like(cnt)

        for _ in range(opt.num_cg_max_iters):
            if not bool(active.any()):
                break
            pdots = _rows_dot(s.p[seg], Yk)
            s.Ap.copy_(ada_reg.unsqueeze(1) * s.p + s.p @ FF)
            s.Ap.index_add_(0, seg, (cw * pdots).unsqueeze(1) * Yk)

            step = (rr / (_rows_dot(s.p, s.Ap) + opt.eps)).unsqueeze(1)
            live = active.unsqueeze(1)
            x = torch.where(live, x + step * s.p, x)
            s.r.copy_(torch.where(live, s.r - step * s.Ap, s.r))
            new_rr = _rows_dot(s.r, s.r)
            steps += active.to(steps.dtype)

            done = new_rr < opt.cg_tolerance
            beta = (new_rr / (rr + opt.eps)).unsqueeze(1)
            s.p.copy_(torch.where(live & ~done.unsqueeze(1), s.r + beta * s.p, s.p))
            rr = torch.where(active, new_rr, rr)
            active = active & ~done

        if loss is not None:
            reg_loss = ada_reg * _rows_dot(x, x)
            loss.add(groups, torch.where(filled, reg_loss, torch.zeros_like(reg_loss)))

        broken = filled & ~torch.isfinite(rr)
        if bool(broken.any()):
            for row in rows[broken].tolist():
                print(f"[als_cg] NaN detected at row {row}, zeroing its factors")
        x = torch.where((broken | ~filled).unsqueeze(1), torch.zeros_like(x), x)

        X[rows] = x
        n_iters[local] = steps

    return n_iters


# =========================
# Solver
# =========================
class CuALS:
    """Implicit ALS solver holding P, Q and the gram matrix on one device."""

    def __init__(self):
        self.opt: Optional[ALSOption] = None
        self.device: Optional[torch.device] = None
        self.vdim = 0
        self.buffers: Optional[DeviceBuffers] = None
        self.last_num_iters: Optional[np.ndarray] = None

    def init(self, option: Union[str, Dict]) -> bool:
        try:
            opt = load_option(option)
        except OptionError as e:
            print(f"[als_cg] failed to load option: {e}")
            return False
        name = opt.device or ("cuda" if torch.cuda.is_available() else "cpu")
        if name.startswith("cuda") and not torch.cuda.is_available():
            print("[als_cg] CUDA not available. Use device=cpu or install GPU torch.")
            return False
        # buffers are sized for the previous vdim and device
        self.release()
        self.opt = opt
        self.device = torch.device(name)
        self.vdim = padded_dim(opt.d, opt.lane_width)
        return True

    def get_latent_dim(self) -> int:
        return self.vdim

    def initialize_model(self, P: np.ndarray, P_rows: int, Q: np.ndarray, Q_rows: int) -> None:
        if self.opt is None:
            raise RuntimeError("init must succeed before initialize_model")
        for name, arr, n in (("P", P, P_rows), ("Q", Q, Q_rows)):
            if arr.shape != (n, self.vdim):
                raise ValueError(f"{name} must have shape ({n}, {self.vdim}), got {arr.shape}")
            if arr.dtype != np.float32 or not arr.flags["C_CONTIGUOUS"]:
                raise ValueError(f"{name} must be a C-contiguous float32 array")
        self.release()
        self.buffers = DeviceBuffers(self.device, P, Q)

    def _require_model(self) -> DeviceBuffers:
        if self.buffers is None:
            raise RuntimeError("initialize_model must be called first")
        return self.buffers

    def num_groups(self) -> int:
        return self.opt.num_groups or default_num_groups(self.device)

    def precompute(self, axis: bool) -> None:
        buf = self._require_model()
        compute_gram(buf.factors(not axis), buf.FF)

    def partial_update(
        self,
        start_x: int,
        next_x: int,
        batch: InteractionBatch,
        axis: bool,
    ) -> Tuple[float, float]:
        buf = self._require_model()
        X, Y = buf.factors(axis), buf.factors(not axis)
        if not 0 <= start_x < next_x <= X.shape[0]:
            raise ValueError(f"invalid row range [{start_x}, {next_x}) for {X.shape[0]} rows")
        batch.validate(next_x - start_x, Y.shape[0])

        indptr, keys, vals = buf.stage_batch(batch)
        num_groups = self.num_groups()
        loss = buf.alloc_loss(num_groups) if self.opt.compute_loss_on_training else None
        reg = self.opt.reg_i if axis else self.opt.reg_u

        with _device_op("least squares kernel"):
            n_iters = least_squares_cg(
                X, Y, buf.FF, indptr, keys, vals, start_x, next_x,
                self.opt, reg, axis, num_groups, loss,
            )
            _device_barrier(self.device)
        self.last_num_iters = n_iters.cpu().numpy()
        del indptr, keys, vals

        if loss is None:
            return 0.0, 0.0
        return loss.reduce()

    def synchronize(self, axis: bool, device_to_host: bool) -> None:
        buf = self._require_model()
        if device_to_host:
            buf.download(axis)
        else:
            buf.upload(axis)

    def release(self) -> None:
        if self.buffers is not None:
            self.buffers.release()
            self.buffers = None


# =========================
# Training loop
# =========================
@dataclass
class History:
    train_loss: List[float] = field(default_factory=list)


def iter_axis_batches(mat: CSRMatrix, max_nnz: int) -> Iterator[Tuple[int, int, InteractionBatch]]:
    for start, end in plan_row_batches(mat.indptr, max_nnz):
        yield start, end, mat.batch(start, end)


def train_als(solver: CuALS, user_items: CSRMatrix, item_users: CSRMatrix) -> History:
    """Alternate user and item passes for opt.num_iters epochs.

    Host copies of P and Q are refreshed once training ends.
    """
    opt = solver.opt
    max_nnz = max(1, int(opt.batch_mb * 1024 * 1024) // BYTES_PER_NNZ)
    hist = History()

    for ep in range(1, opt.num_iters + 1):
        nume, deno = 0.0, 0.0
        for axis, mat in ((False, user_items), (True, item_users)):
            solver.precompute(axis)
            for start, end, batch in iter_axis_batches(mat, max_nnz):
                n, d = solver.partial_update(start, end, batch, axis)
                nume += n
                deno += d

        if opt.compute_loss_on_training:
            train_loss = nume / (deno + opt.eps)
            hist.train_loss.append(train_loss)
            print(f"[als_cg] epoch {ep}/{opt.num_iters} train_loss={train_loss:.6f}")
        else:
            print(f"[als_cg] epoch {ep}/{opt.num_iters} done")

    solver.synchronize(False, True)
    solver.synchronize(True, True)
    return hist
