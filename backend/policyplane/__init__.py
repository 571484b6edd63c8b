"""Policy snapshot evolution and progressive deployment control plane."""
