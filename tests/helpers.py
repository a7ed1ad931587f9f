# SPDX-License-Identifier: MIT

import importlib.machinery
import importlib.util
import os
import subprocess
import tempfile

GIT_HASH_REGEX = r"^[0-9a-f]{5,40}$"

DATA_DIR = os.path.join(os.path.abspath(os.path.dirname(__file__)), "data")

ROOT_DIR = os.path.dirname(os.path.abspath(os.path.dirname(__file__)))

GIT_USER = [
    ["git", "config", "user.name", "John Doe"],
    ["git", "config", "user.email", "jdoe@example.com"],
]


def strings_with_substring(strings, substring):
    return [string for string in strings if substring in string]


def import_path(path):
    """Imports python script as a module

    :param path: Path to python script to import
    :returns: imported module object
    """
    module_name = os.path.basename(path).replace("-", "_")
    spec = importlib.util.spec_from_loader(
        module_name, importlib.machinery.SourceFileLoader(module_name, path)
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def run_cmds(cmds):
    cwd = None
    for cmd in cmds:
        if cmd[0] == "cd":
            cwd = cmd[1]
            continue
        proc = subprocess.Popen(
            cmd, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE
        )
        out, err = proc.communicate()


def git_output(repodir, *args):
    cmd = ["git"] + list(args)
    proc = subprocess.Popen(
        cmd, cwd=repodir, stdout=subprocess.PIPE, stderr=subprocess.PIPE
    )
    out, err = proc.communicate()
    return out.decode("utf-8").rstrip()


def setup_test_repo(git_repo_dir, cfg_file=None):
    clone_dirobj = tempfile.TemporaryDirectory()
    clone_dir = clone_dirobj.name

    # setup a simple bare repo containing a README and a optional config file
    cmds = [
        ["cd", "/tmp"],
        ["git", "init", "--bare", git_repo_dir],
        ["rm", "-rf", clone_dir],
        ["git", "clone", git_repo_dir, clone_dir],
        ["cd", clone_dir],
    ]
    cmds.extend(GIT_USER)
    cmds.append(["bash", "-c", "echo test > README"])
    if cfg_file:
        if cfg_file.startswith(("---\n", "configuration:\n", "packages:")):
            tf = tempfile.NamedTemporaryFile(mode="w")
            tf.write(cfg_file)
            tf.flush()
            cfg_file = tf.name
        cmds.extend(
            [
                ["cp", cfg_file, "aliupdate.yaml"],
            ]
        )
    cmds.extend(
        [
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
            ["git", "push", "origin", "HEAD"],
            ["cd", git_repo_dir],
            ["git", "branch", "-m", "main"],
        ]
    )
    run_cmds(cmds)
    clone_dirobj.cleanup()


def commit_to(remote_dir, branch, filename, content):
    """Pushes a commit changing a single file to a branch of a bare repo."""
    with tempfile.TemporaryDirectory() as clone_dir:
        cmds = [
            ["cd", "/tmp"],
            ["git", "clone", "--branch", branch, remote_dir, clone_dir],
            ["cd", clone_dir],
        ]
        cmds.extend(GIT_USER)
        cmds.extend(
            [
                ["bash", "-c", "echo %s > %s" % (content, filename)],
                ["git", "add", "."],
                ["git", "commit", "-m", "Change %s" % filename],
                ["git", "push", "origin", branch],
            ]
        )
        run_cmds(cmds)


def setup_remotes(basedir, branch="dev", fork="myfork"):
    """Sets up an upstream bare repo with a single commit on `branch`,
    a fork of it and a working clone with both remotes configured and
    `branch` checked out.

    :returns: A tuple of the upstream, fork and working clone paths
    """
    upstream_dir = os.path.join(basedir, "upstream.git")
    fork_dir = os.path.join(basedir, "fork.git")
    work_dir = os.path.join(basedir, "work")
    with tempfile.TemporaryDirectory() as clone_dir:
        cmds = [
            ["cd", "/tmp"],
            ["git", "init", "--bare", upstream_dir],
            ["git", "init", clone_dir],
            ["cd", clone_dir],
        ]
        cmds.extend(GIT_USER)
        cmds.extend(
            [
                ["git", "checkout", "-b", branch],
                ["bash", "-c", "echo upstream > README"],
                ["git", "add", "."],
                ["git", "commit", "-m", "Initial commit"],
                ["git", "remote", "add", "origin", upstream_dir],
                ["git", "push", "origin", branch],
            ]
        )
        run_cmds(cmds)
    cmds = [
        ["cd", "/tmp"],
        ["git", "clone", "--bare", upstream_dir, fork_dir],
        ["git", "clone", "--no-checkout", upstream_dir, work_dir],
        ["cd", work_dir],
    ]
    cmds.extend(GIT_USER)
    cmds.extend(
        [
            ["git", "remote", "rename", "origin", "upstream"],
            ["git", "checkout", "-B", branch, "upstream/" + branch],
            ["git", "remote", "add", fork, fork_dir],
            ["git", "fetch", fork],
        ]
    )
    run_cmds(cmds)
    return upstream_dir, fork_dir, work_dir


def repo_log(repodir, branch="HEAD"):
    return git_output(
        repodir, "log", "--pretty=oneline", "--no-decorate", branch
    )


def last_commit(repodir):
    cmd = ["git", "rev-parse", "--verify", "HEAD"]
    proc = subprocess.Popen(
        cmd, cwd=repodir, stdout=subprocess.PIPE, stderr=subprocess.PIPE
    )
    out, err = proc.communicate()
    return out.rstrip()
