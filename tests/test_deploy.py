"""Tests for deploying packages from the store to live locations."""

import os
import stat

import pytest

from dotr.core import deploy_package, deploy_packages
from dotr.exceptions import (
    ActionFailedError,
    DependencyNotFoundError,
    DotrFileNotFoundError,
    RenderError,
)
from helpers.assertions import (
    assert_backup_exists,
    assert_file_content,
    assert_file_not_exists,
    assert_no_backup,
)
from helpers.builders import ConfigBuilder, PackageBuilder


class TestDeployFilePackage:
    """Test suite for single-file packages."""

    def test_renders_template_and_backs_up(self, repo_dir, temp_home, make_context):
        """Test the shellrc scenario: render, then keep the old file."""
        package = (
            PackageBuilder("f_shell")
            .with_src("store/shellrc")
            .with_dest("~/.shellrc")
            .with_content("export X={{ X }}")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).with_variables(X="1").build()
        live = temp_home / ".shellrc"
        live.write_text("export X=0\n")

        dest = deploy_package(package, make_context(config))

        assert dest == live
        assert_file_content(live, "export X=1")
        assert_backup_exists(live, "export X=0\n")

    def test_no_backup_when_destination_is_new(
        self, repo_dir, temp_home, make_context
    ):
        package = (
            PackageBuilder("f_vimrc")
            .with_content("set number\n")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()

        deploy_package(package, make_context(config))

        assert_file_content(temp_home / ".vimrc", "set number\n")
        assert_no_backup(temp_home / ".vimrc")

    def test_crlf_template_keeps_line_endings(self, repo_dir, temp_home, make_context):
        package = PackageBuilder("f_env").with_dest("~/.env").build()
        (repo_dir / package.src).write_bytes(b"a={{ X }}\r\nb=2\r\n")
        config = ConfigBuilder().with_package(package).with_variables(X="1").build()

        deploy_package(package, make_context(config))

        assert (temp_home / ".env").read_bytes() == b"a=1\r\nb=2\r\n"

    def test_creates_parent_directories(self, repo_dir, temp_home, make_context):
        package = (
            PackageBuilder("f_starship")
            .with_dest("~/.config/starship/starship.toml")
            .with_content("add_newline = false\n")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()

        deploy_package(package, make_context(config))

        assert_file_content(
            temp_home / ".config" / "starship" / "starship.toml",
            "add_newline = false\n",
        )

    def test_redeploy_is_idempotent(self, repo_dir, temp_home, make_context):
        """Test that a second deploy yields the same content and a new backup."""
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("export X={{ X }}\n")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).with_variables(X="1").build()
        ctx = make_context(config)
        live = temp_home / ".shellrc"

        deploy_package(package, ctx)
        first = live.read_text()
        deploy_package(package, ctx)

        assert live.read_text() == first == "export X=1\n"
        assert_backup_exists(live, "export X=1\n")

    def test_stale_backup_is_replaced(self, repo_dir, temp_home, make_context):
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("new\n")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()
        live = temp_home / ".shellrc"
        live.write_text("current\n")
        (temp_home / ".shellrc.dotrbak").mkdir()

        deploy_package(package, make_context(config))

        assert_backup_exists(live, "current\n")

    def test_undefined_variable_renders_empty(
        self, repo_dir, temp_home, make_context
    ):
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("export X={{ UNSET }};\n")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()

        deploy_package(package, make_context(config))

        assert_file_content(temp_home / ".shellrc", "export X=;\n")

    def test_variable_precedence(self, repo_dir, temp_home, make_context):
        """Test that package variables beat config and environment."""
        package = (
            PackageBuilder("f_editor")
            .with_dest("~/.editor")
            .with_content("{{ EDITOR }}")
            .with_variables(EDITOR="emacs")
            .create_in_directory(repo_dir)
        )
        config = (
            ConfigBuilder().with_package(package).with_variables(EDITOR="vim").build()
        )

        deploy_package(package, make_context(config, environment={"EDITOR": "nano"}))

        assert_file_content(temp_home / ".editor", "emacs")

    def test_no_html_escaping(self, repo_dir, temp_home, make_context):
        package = (
            PackageBuilder("f_alias")
            .with_dest("~/.alias")
            .with_content("alias x='{{ CMD }}'")
            .create_in_directory(repo_dir)
        )
        config = (
            ConfigBuilder()
            .with_package(package)
            .with_variables(CMD="a && b > /dev/null")
            .build()
        )

        deploy_package(package, make_context(config))

        assert_file_content(temp_home / ".alias", "alias x='a && b > /dev/null'")

    def test_keeps_file_mode(self, repo_dir, temp_home, make_context):
        package = (
            PackageBuilder("f_script")
            .with_dest("~/bin/script")
            .with_content("#!/bin/sh\necho {{ X }}\n")
            .create_in_directory(repo_dir)
        )
        os.chmod(repo_dir / package.src, 0o755)
        config = ConfigBuilder().with_package(package).with_variables(X=1).build()

        deploy_package(package, make_context(config))

        mode = (temp_home / "bin" / "script").stat().st_mode
        assert mode & stat.S_IXUSR

    def test_missing_source(self, repo_dir, make_context):
        package = PackageBuilder("f_missing").build()
        config = ConfigBuilder().with_package(package).build()

        with pytest.raises(DotrFileNotFoundError, match="does not exist"):
            deploy_package(package, make_context(config))

    def test_render_error_leaves_backup(self, repo_dir, temp_home, make_context):
        package = (
            PackageBuilder("f_broken")
            .with_dest("~/.broken")
            .with_content("{% if %}")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()
        live = temp_home / ".broken"
        live.write_text("previous")

        with pytest.raises(RenderError):
            deploy_package(package, make_context(config))

        assert_backup_exists(live, "previous")


class TestDeployDirectoryPackage:
    """Test suite for directory packages."""

    @pytest.fixture
    def nvim(self, repo_dir):
        return (
            PackageBuilder("d_nvim")
            .with_dest("~/.config/nvim")
            .with_file("init.lua", "vim.g.editor = '{{ EDITOR }}'\n")
            .with_file("lua/plugins.lua", "return {}\n")
            .with_file("lazy-lock.json", "{}\n")
            .with_file("cache/state.bin", b"\x00\xffbinary")
            .with_file("spell/en.utf-8.add", b"\xff\xfe{{ not a template }}")
            .with_ignore("lazy-lock.json", "cache")
            .create_in_directory(repo_dir)
        )

    def test_deploys_tree(self, nvim, temp_home, make_context):
        builder = ConfigBuilder().with_package(nvim)
        config = builder.with_variables(EDITOR="nvim").build()
        live = temp_home / ".config" / "nvim"

        deploy_package(nvim, make_context(config))

        assert_file_content(live / "init.lua", "vim.g.editor = 'nvim'\n")
        assert_file_content(live / "lua" / "plugins.lua", "return {}\n")
        assert (live / "spell" / "en.utf-8.add").read_bytes() == (
            b"\xff\xfe{{ not a template }}"
        )

    def test_ignored_paths_are_not_deployed(self, nvim, temp_home, make_context):
        config = ConfigBuilder().with_package(nvim).build()
        live = temp_home / ".config" / "nvim"

        deploy_package(nvim, make_context(config))

        assert_file_not_exists(live / "lazy-lock.json")
        assert_file_not_exists(live / "cache")

    def test_existing_directory_is_backed_up(self, nvim, temp_home, make_context):
        live = temp_home / ".config" / "nvim"
        live.mkdir(parents=True)
        (live / "old.lua").write_text("old\n")
        config = ConfigBuilder().with_package(nvim).build()

        deploy_package(nvim, make_context(config))

        assert_file_content(temp_home / ".config" / "nvim.dotrbak" / "old.lua", "old\n")
        assert_file_not_exists(live / "old.lua")


class TestActionsDuringDeploy:
    """Test suite for pre/post actions around a deploy."""

    @pytest.fixture(autouse=True)
    def posix_shell(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/bin/sh")

    def test_action_order(self, repo_dir, temp_home, make_context, tmp_path):
        """Test that pre-actions see the old file and post-actions the new one."""
        log = tmp_path / "actions.log"
        live = temp_home / ".shellrc"
        live.write_text("old\n")
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("new\n")
            .with_pre_actions("cat {{ LIVE }} >> {{ LOG }}")
            .with_post_actions("cat {{ LIVE }} >> {{ LOG }}")
            .create_in_directory(repo_dir)
        )
        config = (
            ConfigBuilder()
            .with_package(package)
            .with_variables(LIVE=str(live), LOG=str(log))
            .build()
        )

        deploy_package(package, make_context(config))

        assert log.read_text() == "old\nnew\n"

    def test_failing_pre_action_aborts(self, repo_dir, temp_home, make_context):
        live = temp_home / ".shellrc"
        live.write_text("untouched\n")
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("new\n")
            .with_pre_actions("exit 3")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()

        with pytest.raises(ActionFailedError) as exc_info:
            deploy_package(package, make_context(config))

        assert exc_info.value.exit_code == 3
        assert_file_content(live, "untouched\n")
        assert_no_backup(live)

    def test_failing_post_action_keeps_deployed_files(
        self, repo_dir, temp_home, make_context
    ):
        package = (
            PackageBuilder("f_shell")
            .with_dest("~/.shellrc")
            .with_content("new\n")
            .with_post_actions("false")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_package(package).build()

        with pytest.raises(ActionFailedError):
            deploy_package(package, make_context(config))

        assert_file_content(temp_home / ".shellrc", "new\n")

    def test_action_timeout(self, repo_dir, make_context):
        package = (
            PackageBuilder("f_slow")
            .with_content("x\n")
            .with_pre_actions("sleep 5")
            .create_in_directory(repo_dir)
        )
        config = (
            ConfigBuilder().with_package(package).with_action_timeout(0.2).build()
        )

        with pytest.raises(ActionFailedError, match="timed out"):
            deploy_package(package, make_context(config))


class TestDeployPackages:
    """Test suite for batch deploys."""

    def test_default_selection_skips_marked_packages(
        self, repo_dir, temp_home, make_context
    ):
        zsh = (
            PackageBuilder("f_zshrc")
            .with_content("zsh\n")
            .create_in_directory(repo_dir)
        )
        work = (
            PackageBuilder("f_work")
            .with_content("work\n")
            .skipped()
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_packages([zsh, work]).build()

        deployed = deploy_packages(config, make_context(config))

        assert deployed == ["f_zshrc"]
        assert_file_content(temp_home / ".zshrc", "zsh\n")
        assert_file_not_exists(temp_home / ".work")

    def test_dependencies_are_deployed(self, repo_dir, temp_home, make_context):
        common = (
            PackageBuilder("f_common")
            .with_content("common\n")
            .skipped()
            .create_in_directory(repo_dir)
        )
        zsh = (
            PackageBuilder("f_zshrc")
            .with_content("zsh\n")
            .with_dependencies("f_common")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_packages([common, zsh]).build()

        deployed = deploy_packages(config, make_context(config), ["f_zshrc"])

        assert deployed == ["f_common", "f_zshrc"]
        assert_file_content(temp_home / ".common", "common\n")

    def test_profile_selection_and_targets(self, repo_dir, temp_home, make_context):
        ssh = (
            PackageBuilder("f_ssh")
            .with_dest("~/.ssh/config")
            .with_target("work", "~/.ssh/work_config")
            .with_content("Host {{ HOST }}\n")
            .skipped()
            .create_in_directory(repo_dir)
        )
        config = (
            ConfigBuilder()
            .with_package(ssh)
            .with_profile("work", ["f_ssh"], {"HOST": "bastion"})
            .build()
        )

        deployed = deploy_packages(config, make_context(config, "work"))

        assert deployed == ["f_ssh"]
        assert_file_content(temp_home / ".ssh" / "work_config", "Host bastion\n")
        assert_file_not_exists(temp_home / ".ssh" / "config")

    def test_missing_dependency_mutates_nothing(
        self, repo_dir, temp_home, make_context
    ):
        """Test that resolution fails before any package is deployed."""
        good = (
            PackageBuilder("f_good")
            .with_content("good\n")
            .create_in_directory(repo_dir)
        )
        bad = (
            PackageBuilder("f_bad")
            .with_content("bad\n")
            .with_dependencies("missing")
            .create_in_directory(repo_dir)
        )
        config = ConfigBuilder().with_packages([good, bad]).build()

        with pytest.raises(DependencyNotFoundError) as exc_info:
            deploy_packages(config, make_context(config), ["f_good", "f_bad"])

        assert exc_info.value.name == "missing"
        assert_file_not_exists(temp_home / ".good")
        assert_file_not_exists(temp_home / ".bad")

    def test_nothing_to_deploy(self, make_context):
        config = ConfigBuilder().build()
        assert deploy_packages(config, make_context(config)) == []
