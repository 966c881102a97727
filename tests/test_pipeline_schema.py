"""Tests for pipeline definitions: schema validation, model building and loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from stagerunner.errors import ConfigError
from stagerunner.pipeline.loader import load_pipeline, load_pipeline_file
from stagerunner.pipeline.model import Pipeline, define_pipeline
from stagerunner.pipeline.schema import CredentialRef, PipelineSpec, StageSpec, parse_command


def _stage(name: str = "build", **kwargs) -> dict:
    kwargs.setdefault("command", "mvn -B package")
    return {"name": name, **kwargs}


def _write_pipeline(path: Path, stages: list[dict], **spec) -> Path:
    data = {
        "apiVersion": "stagerunner/v1",
        "kind": "Pipeline",
        "metadata": {"name": "java-service"},
        "spec": {"stages": stages, **spec},
    }
    path.write_text(yaml.safe_dump(data))
    return path


class TestParseCommand:
    def test_splits_like_a_shell(self):
        assert parse_command("docker build -t 'app:1.0' .") == [
            "docker",
            "build",
            "-t",
            "app:1.0",
            ".",
        ]

    @pytest.mark.parametrize("op", ["&&", "|", ";", ">", "||"])
    def test_rejects_shell_operators(self, op):
        with pytest.raises(ValueError, match="shell operator"):
            parse_command(f"mvn test {op} echo done")

    def test_operator_allowed_in_argv_form(self):
        stage = StageSpec.model_validate({"name": "x", "command": ["echo", "&&"]})
        assert stage.commands == [["echo", "&&"]]

    def test_rejects_unclosed_quote(self):
        with pytest.raises(ValueError, match="invalid command syntax"):
            parse_command("echo 'oops")

    def test_rejects_empty(self):
        with pytest.raises(ValueError, match="empty command"):
            parse_command("   ")


class TestStageSpec:
    def test_defaults(self):
        stage = StageSpec.model_validate(_stage())
        assert stage.commands == [["mvn", "-B", "package"]]
        assert stage.abort_on_failure is True
        assert stage.timeout_seconds is None
        assert stage.artifacts == []
        assert stage.env == {}
        assert stage.network is False

    def test_commands_mix_strings_and_argv(self):
        stage = StageSpec.model_validate(
            {"name": "image", "commands": ["docker build -t app .", ["docker", "push", "app"]]}
        )
        assert stage.commands == [["docker", "build", "-t", "app", "."], ["docker", "push", "app"]]

    def test_single_argv_command(self):
        stage = StageSpec.model_validate({"name": "x", "command": ["git", "status"]})
        assert stage.commands == [["git", "status"]]

    def test_command_and_commands_conflict(self):
        with pytest.raises(ValidationError, match="not both"):
            StageSpec.model_validate({"name": "x", "command": "a", "commands": ["b"]})

    def test_requires_a_command(self):
        with pytest.raises(ValidationError):
            StageSpec.model_validate({"name": "x"})
        with pytest.raises(ValidationError):
            StageSpec.model_validate({"name": "x", "commands": []})

    def test_empty_argv_rejected(self):
        with pytest.raises(ValidationError, match="empty command"):
            StageSpec.model_validate({"name": "x", "commands": [[]]})

    def test_numeric_arguments_become_strings(self):
        stage = StageSpec.model_validate({"name": "x", "command": ["sleep", 5]})
        assert stage.commands == [["sleep", "5"]]

    def test_numeric_env_values_become_strings(self):
        stage = StageSpec.model_validate(_stage(env={"JAVA_VERSION": 17}))
        assert stage.env == {"JAVA_VERSION": "17"}

    def test_credential_env_value(self):
        stage = StageSpec.model_validate(_stage(env={"SONAR_TOKEN": {"credential": "sonar"}}))
        assert stage.env["SONAR_TOKEN"] == CredentialRef(credential="sonar")
        assert stage.credential_refs() == {"sonar"}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            StageSpec.model_validate(_stage(depends_on=["checkout"]))

    @pytest.mark.parametrize("timeout", [0, -5])
    def test_timeout_must_be_positive(self, timeout):
        with pytest.raises(ValidationError):
            StageSpec.model_validate(_stage(timeout_seconds=timeout))

    def test_network_stage_requires_timeout(self):
        with pytest.raises(ValidationError, match="network: true"):
            StageSpec.model_validate(_stage(network=True))
        stage = StageSpec.model_validate(_stage(network=True, timeout_seconds=600))
        assert stage.network is True

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.txt", "target/../../x"])
    def test_artifact_must_stay_in_workspace(self, path):
        with pytest.raises(ValidationError, match="workspace"):
            StageSpec.model_validate(_stage(artifacts=[path]))

    def test_working_dir_must_be_relative(self):
        with pytest.raises(ValidationError, match="workspace"):
            StageSpec.model_validate(_stage(working_dir="/tmp"))

    def test_frozen(self):
        stage = StageSpec.model_validate(_stage())
        with pytest.raises(ValidationError):
            stage.name = "other"  # type: ignore[misc]

    def test_credential_ref_str_hides_nothing_secret(self):
        assert str(CredentialRef(credential="docker-hub")) == "<credential:docker-hub>"


class TestPipelineSpec:
    def test_duplicate_stage_names(self):
        with pytest.raises(ValidationError, match="Duplicate stage name"):
            PipelineSpec.model_validate({"stages": [_stage("build"), _stage("build")]})

    def test_at_least_one_stage(self):
        with pytest.raises(ValidationError):
            PipelineSpec.model_validate({"stages": []})

    def test_stage_references_undeclared_credential(self):
        with pytest.raises(ValidationError, match="undeclared credential 'sonar'"):
            PipelineSpec.model_validate(
                {"stages": [_stage(env={"SONAR_TOKEN": {"credential": "sonar"}})]}
            )

    def test_pipeline_env_references_undeclared_credential(self):
        with pytest.raises(ValidationError, match="undeclared credential 'registry'"):
            PipelineSpec.model_validate(
                {
                    "env": {"REGISTRY_PASSWORD": {"credential": "registry"}},
                    "stages": [_stage()],
                }
            )

    def test_declared_credential_accepted(self):
        spec = PipelineSpec.model_validate(
            {
                "credentials": ["sonar"],
                "stages": [_stage(env={"SONAR_TOKEN": {"credential": "sonar"}})],
            }
        )
        assert spec.credentials == ["sonar"]

    def test_credential_interpolation_into_argv_rejected(self):
        with pytest.raises(ValidationError, match="credential-backed variable 'TOKEN'"):
            PipelineSpec.model_validate(
                {
                    "credentials": ["sonar"],
                    "env": {"TOKEN": {"credential": "sonar"}},
                    "stages": [_stage(command="mvn sonar:sonar -Dsonar.login=${TOKEN}")],
                }
            )

    def test_plain_interpolation_allowed(self):
        spec = PipelineSpec.model_validate(
            {
                "env": {"IMAGE": "acme/app"},
                "stages": [_stage(command="docker build -t ${IMAGE} .")],
            }
        )
        assert spec.stages[0].commands == [["docker", "build", "-t", "${IMAGE}", "."]]


class TestDefinePipeline:
    def test_builds_immutable_pipeline(self, tmp_path):
        pipe = define_pipeline([_stage("a"), _stage("b")], {"X": "1"}, base_dir=tmp_path)
        assert isinstance(pipe, Pipeline)
        assert pipe.stage_names == ["a", "b"]
        assert isinstance(pipe.stages, tuple)
        assert pipe.base_dir == tmp_path.resolve()
        with pytest.raises(TypeError):
            pipe.env["X"] = "2"  # type: ignore[index]

    def test_accepts_stage_specs(self, tmp_path):
        stage = StageSpec.model_validate(_stage("a"))
        pipe = define_pipeline([stage], base_dir=tmp_path)
        assert pipe.stage("a") == stage

    def test_unknown_stage_lookup(self, tmp_path):
        pipe = define_pipeline([_stage("a")], base_dir=tmp_path)
        with pytest.raises(KeyError):
            pipe.stage("missing")

    def test_invalid_raises_config_error(self):
        with pytest.raises(ConfigError, match="Invalid pipeline 'demo'"):
            define_pipeline([_stage("a"), _stage("a")], name="demo")

    def test_each_pipeline_gets_its_own_run_id(self, tmp_path):
        a = define_pipeline([_stage()], base_dir=tmp_path)
        b = define_pipeline([_stage()], base_dir=tmp_path)
        assert a.run_id != b.run_id


class TestLoader:
    def test_load_valid_file(self, tmp_path):
        path = _write_pipeline(tmp_path / "pipeline.yaml", [_stage("build")])
        definition = load_pipeline(path)
        assert definition.metadata.name == "java-service"
        assert definition.spec.stages[0].name == "build"

    def test_load_pipeline_file_uses_file_dir_as_workspace(self, tmp_path):
        path = _write_pipeline(tmp_path / "pipeline.yaml", [_stage()])
        pipe = load_pipeline_file(path)
        assert pipe.name == "java-service"
        assert pipe.base_dir == tmp_path.resolve()

    def test_explicit_base_dir(self, tmp_path):
        ws = tmp_path / "checkout"
        ws.mkdir()
        path = _write_pipeline(tmp_path / "pipeline.yaml", [_stage()])
        assert load_pipeline_file(path, base_dir=ws).base_dir == ws.resolve()

    def test_overrides_replace_literal_env(self, tmp_path):
        path = _write_pipeline(tmp_path / "p.yaml", [_stage()], env={"IMAGE_TAG": "latest"})
        pipe = load_pipeline_file(path, overrides={"IMAGE_TAG": "1.2.3", "EXTRA": "x"})
        assert pipe.env == {"IMAGE_TAG": "1.2.3", "EXTRA": "x"}

    def test_overriding_credential_var_rejected(self, tmp_path):
        path = _write_pipeline(
            tmp_path / "p.yaml",
            [_stage()],
            credentials=["registry"],
            env={"REGISTRY_PASSWORD": {"credential": "registry"}},
        )
        with pytest.raises(ConfigError, match="credential-backed"):
            load_pipeline_file(path, overrides={"REGISTRY_PASSWORD": "hunter22"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_pipeline(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("spec: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_pipeline(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_pipeline(path)

    def test_validation_error(self, tmp_path):
        path = _write_pipeline(tmp_path / "p.yaml", [_stage("a"), _stage("a")])
        with pytest.raises(ConfigError, match="Validation failed"):
            load_pipeline(path)

    def test_wrong_kind(self, tmp_path):
        path = tmp_path / "p.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "apiVersion": "stagerunner/v1",
                    "kind": "Role",
                    "metadata": {"name": "x"},
                    "spec": {"stages": [_stage()]},
                }
            )
        )
        with pytest.raises(ConfigError):
            load_pipeline(path)
