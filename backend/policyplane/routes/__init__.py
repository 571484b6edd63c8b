from importlib import import_module

modules = [
    'health',
    'snapshots',
    'rules',
    'deployments',
    'validation_runs',
    'pipeline_runs',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
