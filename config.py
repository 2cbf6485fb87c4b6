from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class ProcedureConfig:
    """
        Settings shared by every node and operation of a procedure.

        dtype: floating point type of all values and gradients
        seed: seed of the generator used by dropout and random pooling
        log_chain: logs the expression and gradient chains when the
            procedure is finalized (debug level)
    """
    dtype: type = np.float64
    seed: Optional[int] = None
    log_chain: bool = False

    def rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)
