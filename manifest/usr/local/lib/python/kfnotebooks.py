"""
library with helper classes for kubeflow notebooks maintenance tasks
License: MIT
"""

import argparse
import re
import sys
import tempfile
from os import getenv, getpid
from os.path import basename, exists, isfile, join
from shutil import rmtree, which
from subprocess import PIPE, STDOUT, run
from sys import exit, stderr

from kubernetes import client, config
from urllib3.exceptions import HTTPError
from pygit2 import (
    GitError,
    Keypair,
    KeypairFromAgent,
    RemoteCallbacks,
    Repository,
    UserPass,
    clone_repository,
    features,
    init_repository,
)
from pygit2.enums import CredentialType, FetchPrune, Feature, MergeAnalysis

# controller name -> (app label, main module pattern)
CONTROLLERS = {
    "notebook-controller": ("notebook-controller", "kubeflow.*notebook"),
    "pvcviewer-controller": ("pvcviewer", "kubeflow.*pvc-viewer"),
    "tensorboard-controller": ("tensorboard-controller", "kubeflow.*tensorboard"),
}

DEFAULT_NAMESPACE = "kubeflow"
DEFAULT_BINARY_PATH = "/manager"

UPSTREAM_REPO = "https://github.com/kubeflow/notebooks.git"
DEFAULT_BRANCHES = ["main", "notebooks-v1", "notebooks-v2"]

_DEP_PREFIX = re.compile(r"^\s*dep\s*")


class UsageParser(argparse.ArgumentParser):
    # usage errors exit 1 like the rest of the failures
    def error(self, message):
        self.print_usage(stderr)
        print(f"error: {message}", file=stderr)
        exit(1)


class GoBuildInfo(object):
    def __init__(self, output, module_pattern):
        self.lines = output.splitlines()
        self.module_pattern = module_pattern

    @staticmethod
    def strip_dep(line):
        return _DEP_PREFIX.sub("  ", line)

    @property
    def go_version(self):
        return self.lines[0] if self.lines else ""

    @property
    def main_module(self):
        pattern = re.compile(self.module_pattern)
        return [self.strip_dep(x) for x in self.lines if pattern.search(x)]

    @property
    def dependencies(self):
        return [self.strip_dep(x) for x in self.lines if re.match(r"^\s*dep", x)]


class ControllerGoInfo(object):
    def __init__(self, controller, namespace, binary_path):
        if None in [controller, namespace, binary_path]:
            raise ValueError("init variables missing for ControllerGoInfo")
        if controller not in CONTROLLERS:
            raise ValueError(f"unsupported controller: {controller}")

        self.controller = controller
        self.namespace = namespace
        self.binary_path = binary_path
        self.app_label, self.module_pattern = CONTROLLERS[controller]
        self.engine = getenv("CONTAINER_ENGINE", "docker")
        self.go = getenv("GO_BIN", "go")

        for tool in [self.engine, self.go]:
            if not which(tool):
                print(f"Error: {tool} is not installed or not in PATH", file=stderr)
                exit(1)

        try:
            config.load_kube_config(context=getenv("KUBE_CONTEXT"))
        except config.ConfigException:
            try:
                config.load_incluster_config()
            except config.ConfigException as e:
                print(e, file=stderr)
                exit(10)

        try:
            self.k8s = client.CoreV1Api()
        except client.ApiException as e:
            print(e, file=stderr)
            exit(11)

    def find_pod(self):
        try:
            resp = self.k8s.list_namespaced_pod(
                namespace=self.namespace, label_selector=f"app={self.app_label}"
            )
        except (client.ApiException, HTTPError, OSError) as e:
            print(e, file=stderr)
            return None

        if not resp.items:
            return None
        return resp.items[0].metadata.name

    def pod_image(self, pod):
        try:
            resp = self.k8s.read_namespaced_pod(name=pod, namespace=self.namespace)
        except (client.ApiException, HTTPError, OSError) as e:
            print(e, file=stderr)
            exit(12)
        return resp.spec.containers[0].image

    def extract_binary(self, image, dest):
        container = f"temp-{self.controller}-{getpid()}"
        proc = run(
            [self.engine, "create", "--name", container, image],
            stdout=PIPE,
            stderr=PIPE,
            text=True,
        )
        if proc.returncode != 0 or not proc.stdout.strip():
            print(
                "Error: Could not create container from image. "
                "Is the image available locally?",
                file=stderr,
            )
            print(f"Try: {self.engine} pull {image}", file=stderr)
            exit(1)

        try:
            proc = run(
                [self.engine, "cp", f"{container}:{self.binary_path}", dest],
                stdout=PIPE,
                stderr=PIPE,
                text=True,
            )
            if proc.returncode != 0:
                print(
                    f"Error: Failed to extract binary from path: {self.binary_path}",
                    file=stderr,
                )
                print(
                    "The binary might be at a different path in the container.",
                    file=stderr,
                )
                exit(1)
        finally:
            run([self.engine, "rm", container], stdout=PIPE, stderr=PIPE)

        if not isfile(dest):
            print("Error: Failed to extract binary", file=stderr)
            exit(1)

        return dest

    def build_info(self, path):
        proc = run([self.go, "version", "-m", path], stdout=PIPE, stderr=STDOUT, text=True)
        if proc.returncode != 0:
            print(proc.stdout, file=stderr)
            print(f"Error: Failed to read build info from {path}", file=stderr)
            exit(1)
        return GoBuildInfo(proc.stdout, self.module_pattern)

    def run(self):
        pod = self.find_pod()
        if not pod:
            print(
                f"Error: No {self.controller} pod found in namespace {self.namespace}",
                file=stderr,
            )
            print(f"Looking for pods with label: app={self.app_label}", file=stderr)
            exit(1)

        print(f"Controller: {self.controller}")
        print(f"Found pod: {pod}")
        image = self.pod_image(pod)
        print(f"Image: {image}")
        print("")

        tmp = tempfile.mkdtemp(prefix=f"{self.controller}-binary-")
        try:
            binary = self.extract_binary(image, join(tmp, basename(self.binary_path)))
            info = self.build_info(binary)
        finally:
            rmtree(tmp, ignore_errors=True)

        print("=== Go Version Used to Build Binary ===")
        print(info.go_version)
        print("")
        print("=== Main Module ===")
        print("\n".join(info.main_module) or "  (not found)")
        print("")
        print("=== All Dependencies ===")
        print("\n".join(info.dependencies))
        print("")
        print("✓ Done")
        return info


def check_controller_go_info(argv=None):
    supported = "\n".join(f"  - {x}" for x in CONTROLLERS)
    parser = UsageParser(
        prog="check-controller-go-info",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Check Go version and dependencies for a notebooks-v1 "
        "go-based controller.",
        epilog="\n".join(
            [
                "Supported controllers:",
                supported,
                "",
                "Examples:",
                "  check-controller-go-info notebook-controller",
                "  check-controller-go-info pvcviewer-controller kubeflow",
                "  check-controller-go-info tensorboard-controller kubeflow /manager",
            ]
        ),
    )
    parser.add_argument("controller", help="name of the controller")
    parser.add_argument(
        "namespace",
        nargs="?",
        default=DEFAULT_NAMESPACE,
        help=f"kubernetes namespace (default: {DEFAULT_NAMESPACE})",
    )
    parser.add_argument(
        "binary_path",
        nargs="?",
        default=DEFAULT_BINARY_PATH,
        help=f"path to binary in container (default: {DEFAULT_BINARY_PATH})",
    )
    args = parser.parse_args(argv)

    if args.controller not in CONTROLLERS:
        print(f"Error: Unsupported controller: {args.controller}", file=stderr)
        print("", file=stderr)
        print("Supported controllers:", file=stderr)
        print(supported, file=stderr)
        exit(1)

    ControllerGoInfo(args.controller, args.namespace, args.binary_path).run()
    return 0


class Log(object):
    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    NC = "\033[0m"

    def __init__(self, debug=False):
        self.debug = debug
        self.colors = sys.stdout.isatty() and getenv("NO_COLOR", "") != "1"

    def _tag(self, tag, color):
        return f"{color}[{tag}]{self.NC}" if self.colors else f"[{tag}]"

    def info(self, msg):
        print(f"{self._tag('INFO', self.GREEN)} {msg}")

    def warn(self, msg):
        print(f"{self._tag('WARN', self.YELLOW)} {msg}", file=stderr)

    def error(self, msg):
        print(f"{self._tag('ERROR', self.RED)} {msg}", file=stderr)

    def trace(self, msg):
        if self.debug:
            print(f"+ {msg}", file=stderr)


class GitCallbacks(RemoteCallbacks):
    def __init__(self):
        super().__init__()
        self.rejected = {}
        self.ssh_pubkey = getenv("GIT_SSH_PUBKEY")
        self.ssh_privkey = getenv("GIT_SSH_PRIVKEY")
        self.ssh_passphrase = getenv("GIT_SSH_PASSPHRASE", "")
        self.username = getenv("GIT_USERNAME")
        self.token = getenv("GIT_TOKEN")

    def credentials(self, url, username_from_url, allowed_types):
        user = username_from_url or "git"
        if allowed_types & CredentialType.SSH_KEY:
            if self.ssh_pubkey and self.ssh_privkey:
                return Keypair(user, self.ssh_pubkey, self.ssh_privkey, self.ssh_passphrase)
            return KeypairFromAgent(user)
        if allowed_types & CredentialType.USERPASS_PLAINTEXT and self.token:
            return UserPass(self.username or user, self.token)
        raise GitError(f"no credentials available for {url}")

    def push_update_reference(self, refname, message):
        if message:
            self.rejected[refname] = message


def is_ssh_url(url):
    if url.startswith("ssh://"):
        return True
    return "://" not in url and re.match(r"^[\w.-]+@[\w.-]+:", url) is not None


class DetachedClone(object):
    def __init__(self, target, source=UPSTREAM_REPO, branches=None, shallow=False, log=None):
        if None in [target, source]:
            raise ValueError("init variables missing for DetachedClone")

        self.target = target
        self.source = source
        self.branches = list(branches or DEFAULT_BRANCHES)
        self.shallow = shallow
        self.log = log or Log()
        self.tmp = None
        self.path = None
        self.repo = None

    def check_env(self):
        for url in [self.source, self.target]:
            if url.startswith(("https://", "http://")) and not features & Feature.HTTPS:
                self.log.error(f"libgit2 was built without HTTPS support, cannot reach {url}")
                exit(1)
            if is_ssh_url(url) and not features & Feature.SSH:
                self.log.error(f"libgit2 was built without SSH support, cannot reach {url}")
                exit(1)

    def ls_remote(self, url):
        probe = join(self.tmp, "probe.git")
        if not exists(probe):
            init_repository(probe, bare=True)
        remote = Repository(probe).remotes.create_anonymous(url)
        self.log.trace(f"ls-remote {url}")
        return [x.name for x in remote.list_heads(callbacks=GitCallbacks())]

    def _validate(self, kind, url):
        self.log.info(f"Validating {kind.lower()} repository is accessible...")
        try:
            self.ls_remote(url)
        except GitError as e:
            self.log.trace(e)
            self.log.error(f"{kind} repository is not accessible: {url}")
            self.log.error("Please ensure the repository exists and you have access to it.")
            exit(1)
        self.log.info(f"{kind} repository is accessible")

    def validate_source(self):
        self._validate("Source", self.source)

    def validate_target(self):
        self._validate("Target", self.target)

    def clone(self):
        if self.shallow:
            self.log.info(f"Cloning {self.source} (shallow)...")
            self.log.trace(f"clone --depth 1 {self.source} {self.path}")
            self.repo = clone_repository(
                self.source, self.path, callbacks=GitCallbacks(), depth=1
            )
        else:
            self.log.info(f"Cloning {self.source}...")
            self.log.trace(f"clone {self.source} {self.path}")
            self.repo = clone_repository(self.source, self.path, callbacks=GitCallbacks())
        self.log.info(f"Successfully cloned upstream repository to {self.path}")

    def verify_branches(self):
        self.log.info("Verifying branches exist...")
        origin = self.repo.remotes["origin"]
        self.log.trace("fetch origin --prune")
        origin.fetch(callbacks=GitCallbacks(), prune=FetchPrune.PRUNE)

        self.log.trace("ls-remote --heads origin")
        heads = [x.name for x in origin.list_heads(callbacks=GitCallbacks())]
        for branch in self.branches:
            if f"refs/heads/{branch}" in heads:
                self.log.info(f"Branch '{branch}' exists on remote")
            else:
                self.log.error(f"Branch '{branch}' does not exist on remote")
                exit(1)

    def current_branch(self):
        if self.repo.head_is_unborn or self.repo.head_is_detached:
            return None
        return self.repo.head.shorthand

    def fast_forward(self, branch):
        remote = self.repo.branches.remote[f"origin/{branch}"]
        local = self.repo.branches.local[branch]
        self.log.trace(f"pull origin {branch}")
        if local.target == remote.target:
            return

        analysis, _ = self.repo.merge_analysis(remote.target, local.name)
        if analysis & MergeAnalysis.UP_TO_DATE:
            return
        if not analysis & MergeAnalysis.FASTFORWARD:
            self.log.error(f"Branch '{branch}' has diverged from origin/{branch}")
            exit(1)

        self.repo.checkout_tree(self.repo.get(remote.target))
        local.set_target(remote.target)

    def setup_tracking_branches(self):
        self.log.info("Setting up local tracking branches...")

        for branch in self.branches:
            if self.current_branch() == branch:
                self.log.info(f"Already on branch '{branch}'")
            elif branch in self.repo.branches.local:
                self.log.trace(f"checkout {branch}")
                self.repo.checkout(f"refs/heads/{branch}")
                self.log.info(f"Checked out existing local branch '{branch}'")
            else:
                self.log.trace(f"checkout -b {branch} origin/{branch}")
                remote = self.repo.branches.remote[f"origin/{branch}"]
                local = self.repo.branches.local.create(branch, self.repo.get(remote.target))
                local.upstream = remote
                self.repo.checkout(f"refs/heads/{branch}")
                self.log.info(f"Created and checked out new branch '{branch}'")

            self.fast_forward(branch)

    def reorganize_remotes(self):
        upstream = "kubeflow" if self.source == UPSTREAM_REPO else self.source
        self.log.info(f"Reorganizing remotes (origin = yours, upstream = {upstream})...")

        if "upstream" in self.remote_names():
            self.log.info("'upstream' remote already exists")
        else:
            self.log.trace("remote rename origin upstream")
            self.repo.remotes.rename("origin", "upstream")
            self.log.info("Renamed 'origin' to 'upstream'")

        if "origin" in self.remote_names():
            self.log.trace(f"remote set-url origin {self.target}")
            self.repo.remotes.set_url("origin", self.target)
            self.log.info("Updated 'origin' remote URL")
        else:
            self.log.trace(f"remote add origin {self.target}")
            self.repo.remotes.create("origin", self.target)
            self.log.info(f"Added 'origin' remote: {self.target}")

        self.log.info("Current remotes:")
        for r in self.repo.remotes:
            print(f"{r.name}\t{r.url} (fetch)")
            print(f"{r.name}\t{r.push_url or r.url} (push)")

    def remote_names(self):
        return [r.name for r in self.repo.remotes]

    def _push(self, refspec):
        cb = GitCallbacks()
        try:
            self.repo.remotes["origin"].push([refspec], callbacks=cb)
        except GitError as e:
            return str(e)
        return "; ".join(cb.rejected.values())

    def push_branches(self):
        self.log.info("Pushing branches to your new repository...")

        for branch in self.branches:
            self.log.info(f"Pushing branch: {branch}")
            refspec = f"refs/heads/{branch}:refs/heads/{branch}"

            self.log.trace(f"push -u origin {branch}")
            rejected = self._push(refspec)
            if rejected:
                self.log.trace(rejected)
                self.log.warn("Normal push rejected, using force push to overwrite remote...")
                self.log.trace(f"push -u --force origin {branch}")
                error = self._push(f"+{refspec}")
                if error:
                    self.log.error(f"Force push of branch '{branch}' failed: {error}")
                    exit(1)
                self.log.info(f"Force pushed branch '{branch}' to origin")
            else:
                self.log.info(f"Pushed branch '{branch}' to origin")

            self.repo.config[f"branch.{branch}.remote"] = "origin"
            self.repo.config[f"branch.{branch}.merge"] = f"refs/heads/{branch}"

    def set_default_branch(self):
        default = "main" if "main" in self.branches else self.branches[0]
        self.log.info(f"Setting default branch to {default}...")
        self.log.trace(f"checkout {default}")
        self.repo.checkout(f"refs/heads/{default}")

    def cleanup(self):
        if self.tmp and exists(self.tmp):
            rmtree(self.tmp, ignore_errors=True)

    def run(self):
        self.tmp = tempfile.mkdtemp()
        self.path = join(self.tmp, "repo")
        try:
            self.check_env()
            self.validate_source()
            self.validate_target()
            self.clone()
            self.verify_branches()
            self.setup_tracking_branches()
            self.reorganize_remotes()
            self.push_branches()
            self.set_default_branch()
        except GitError as e:
            self.log.error(f"git operation failed: {e}")
            exit(1)
        finally:
            self.cleanup()

        self.log.info(f"Setup complete! Your detached clone is ready at {self.target}")


def parse_branches(value):
    branches = [x.strip() for x in value.split(",") if x.strip()]
    if not branches:
        raise argparse.ArgumentTypeError("--branches requires at least one branch name")
    return branches


DETACHED_USAGE = """\
Create a detached clone of kubeflow/notebooks with full history.

PREREQUISITES:
  1. Create an EMPTY repository on GitHub first
     - Go to: https://github.com/new
     - Do NOT initialize with README, .gitignore, or license
     - Copy the repository URL
"""

DETACHED_EPILOG = """\
examples:
  make-detached-notebooks-repo --target-repo https://github.com/YOUR_USERNAME/notebooks-test.git
  make-detached-notebooks-repo --target-repo https://github.com/YOUR_USERNAME/notebooks-test.git \\
      --branches "main,develop,feature-x"

This will:
  1. Clone the source repository with full history
  2. Rename 'origin' to 'upstream'
  3. Add your repo as 'origin'
  4. Push specified branches to your repo

NOTE: If your repo already has content, it will automatically
      be force pushed to overwrite it.
"""


def make_detached_notebooks_repo(argv=None):
    parser = UsageParser(
        prog="make-detached-notebooks-repo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=DETACHED_USAGE,
        epilog=DETACHED_EPILOG,
    )
    parser.add_argument(
        "--target-repo", required=True, metavar="URL", help="URL of your new repository"
    )
    parser.add_argument(
        "--source-repo",
        default=UPSTREAM_REPO,
        metavar="URL",
        help=f"URL of the source repository to clone (default: {UPSTREAM_REPO})",
    )
    parser.add_argument(
        "--branches",
        type=parse_branches,
        default=DEFAULT_BRANCHES,
        metavar="LIST",
        help="comma-separated list of branches to copy "
        f"(default: {','.join(DEFAULT_BRANCHES)})",
    )
    parser.add_argument(
        "--shallow", action="store_true", help="perform a shallow clone (depth 1, no history)"
    )
    parser.add_argument(
        "--debug", action="store_true", help="trace every git operation on stderr"
    )
    args = parser.parse_args(argv)

    log = Log(debug=args.debug)
    DetachedClone(
        args.target_repo,
        source=args.source_repo,
        branches=args.branches,
        shallow=args.shallow,
        log=log,
    ).run()
    return 0
