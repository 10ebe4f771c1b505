# Repo root on sys.path so tests can import src.openrisk without installing.
