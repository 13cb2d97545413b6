# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.
"""Test with different environment configuration with nox.

Documentation:
    https://nox.thea.codes/
"""

import nox

nox.options.error_on_missing_interpreters = False


COMMON_TEST_DEPENDENCIES = (
    "numpy",
    "parameterized",
    "pytest!=7.1.0",
)
ONNX = "onnx==1.17"
ONNX_IR = "onnx_ir==0.1.3"
ONNX_IR_MAIN = "git+https://github.com/onnx/ir-py.git@main#egg=onnx_ir"


@nox.session(tags=["build"])
def build(session):
    """Build package."""
    session.install("build", "wheel")
    session.run("python", "-m", "build")


@nox.session(tags=["test"])
def test(session):
    """Test onnxpeephole."""
    session.install(*COMMON_TEST_DEPENDENCIES, ONNX, ONNX_IR)
    session.install(".", "--no-deps")
    session.run("pip", "list")
    session.run("pytest", "onnxpeephole", *session.posargs)


@nox.session(tags=["test-onnx-ir-git"])
def test_onnx_ir_git(session):
    """Test with ONNX IR Git builds."""
    session.install(*COMMON_TEST_DEPENDENCIES, ONNX)
    session.install(ONNX_IR_MAIN)
    session.install(".", "--no-deps")
    session.run("pip", "list")
    session.run("pytest", "onnxpeephole", *session.posargs)
