"""protoc output for src/rpc/*.proto (written by hatch_build.py at install time)."""
