"""Report builders for simulation results."""
