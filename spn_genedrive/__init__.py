"""spn-genedrive: Stochastic Petri Net simulation of mosquito gene drives.

A node-structured model coupling:
  - Erlang-staged mosquito life history with arbitrary inheritance cubes
  - SEI mosquito infection and SIS / SEIR human compartments
  - Metapopulation networks with per-capita migration and batch moves
  - Interchangeable samplers: ODE, tau-leaping, CLE, Gillespie direct
    method, and operator-split coupling to an external human ODE
"""

__version__ = "0.1.0"
