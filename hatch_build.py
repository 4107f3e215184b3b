"""Hatch build hook: compiles src/rpc/*.proto into src/rpc/generated.

The generated *_pb2.py / *_pb2_grpc.py modules are gitignored. They are
produced here on every build (including editable installs) so neither the
server nor the tests need grpcio-tools at runtime.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

from hatchling.builders.hooks.plugin.interface import BuildHookInterface


class ProtobufBuildHook(BuildHookInterface):
    PLUGIN_NAME = "protobuf"

    def initialize(self, version: str, build_data: dict) -> None:  # type: ignore[type-arg]
        root = Path(self.root)
        proto_dir = root / "src" / "rpc"
        out_dir = proto_dir / "generated"

        protos = sorted(proto_dir.glob("*.proto"))
        if not protos:
            return

        out_dir.mkdir(parents=True, exist_ok=True)
        subprocess.check_call(
            [
                sys.executable,
                "-m",
                "grpc_tools.protoc",
                f"-I{proto_dir}",
                f"--python_out={out_dir}",
                f"--grpc_python_out={out_dir}",
                f"--pyi_out={out_dir}",
                *[str(p) for p in protos],
            ],
        )

        # protoc emits flat imports; rewrite them to package-absolute ones
        for grpc_file in out_dir.glob("*_pb2_grpc.py"):
            content = grpc_file.read_text()
            for proto in protos:
                module = f"{proto.stem}_pb2"
                alias = module.replace("_", "__")
                content = content.replace(
                    f"import {module} as {alias}",
                    f"from src.rpc.generated import {module} as {alias}",
                )
            grpc_file.write_text(content)

        # Editable installs resolve src/ in place; wheels need the files forced in
        if version == "standard":
            for pattern in ("*_pb2.py", "*_pb2_grpc.py", "*_pb2.pyi"):
                for f in out_dir.glob(pattern):
                    rel = f.relative_to(root)
                    build_data["force_include"][str(f)] = str(rel)
