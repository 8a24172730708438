from kiln.errors import (
    AssemblyError,
    CacheLockError,
    ErrorCode,
    KilnError,
    ManifestError,
    SecretLeakError,
)


def test_error_to_dict_carries_code_hint_and_context() -> None:
    error = ManifestError(
        "Lockfile does not exist.",
        hint="Commit a kiln.lock.",
        context={"path": "kiln.lock"},
    )

    payload = error.to_dict()

    assert payload["code"] == ErrorCode.MANIFEST.value
    assert payload["hint"] == "Commit a kiln.lock."
    assert payload["context"] == {"path": "kiln.lock"}
    assert "Lockfile does not exist." in str(payload["message"])


def test_error_stage_reads_mutable_context() -> None:
    error = CacheLockError("Timed out.")
    assert error.stage is None

    error.context["stage"] = "build"

    assert error.stage == "build"
    assert "stage: build" in str(error)


def test_secret_leak_is_an_assembly_error_with_its_own_code() -> None:
    error = SecretLeakError("leak")

    assert isinstance(error, AssemblyError)
    assert isinstance(error, KilnError)
    assert error.code == "E_SECRET_LEAK"
    assert AssemblyError("failed").code == "E_ASSEMBLY"
