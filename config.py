"""
Runtime configuration for the TDOA/MPC demo.

Dataclass defaults in cyphy_core hold the reference tuning; the values here
are what main.py runs with.
"""

# Estimator configuration (TDOAEstimatorConfig)
ESTIMATOR_CONFIG = {
    "dt_s": 0.016,                       # 60 Hz estimation cycle
    "initial_position": (2.0, 2.6, 0.0),
    "initial_pos_std_xy_m": 100.0,
    "initial_pos_std_z_m": 1.0,
    "initial_vel_std_m_s": 0.01,
    "measurement_std_m": 0.15,
    "propagate_state": True,
    "q_pos": 0.05,                       # Lets the filter follow a moving car
    "q_vel": 0.5,
    "max_innovation_sigma": 5.0,
}

# Controller configuration (MPCConfig)
CONTROLLER_CONFIG = {
    "horizon_steps": 10,
    "dt_s": 0.1,                         # 10 Hz control cycle
    "lr_m": 0.3,
    "steering_bound_rad": 0.35,
    "speed_bound_m_s": 3.0,
    "reference_speed_m_s": 0.8,
    "time_limit_s": 0.1,
    "max_iterations": 100,
}

# Cost weights (MPCCostWeights)
COST_WEIGHTS = {
    "cte": 50.0,                         # Dataclass defaults: cte = epsi = 1.0
    "epsi": 50.0,
    "steering": 200.0,
    "speed": 50.0,
    "steering_rate": 250.0,
    "speed_rate": 200.0,
}

# Closed loop (ControlLoopConfig)
LOOP_CONFIG = {
    "fallback_policy": "hold_last",      # raise | hold_last | zero
    "lookahead_waypoints": 6,
    "waypoint_radius_m": 0.3,
}

# Simulation
SIMULATION_CONFIG = {
    "steps": 600,                        # 600 x 16 ms ~ 9.6 s
    "noise_std_m": 0.05,
    "seed": 7,
    "waypoints": [
        (2.4, 2.60),
        (2.8, 2.55),
        (3.2, 2.40),
        (3.6, 2.20),
        (3.9, 1.95),
        (4.1, 1.70),
    ],
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
