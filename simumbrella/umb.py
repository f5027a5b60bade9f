#!/usr/bin/env python3

'''
# Sim Umbrella umb CLI Utility

A workspace provisioning script for sim development. `umb add-sim <sim>` fetches
the shared tooling repos, the sim, its live repo and every library the sim depends
on into a single `repos/` directory. Live repos are shallow git clones; everything
else is an unpacked source snapshot. The remaining operations run uniformly across
the whole workspace.
'''

#ANCHOR: Native Dependencies
import os, sys, argparse, subprocess, shutil, enum, re, json, shlex, tempfile, functools, typing
from subprocess import Popen, STDOUT
from filelock import FileLock


#ANCHOR: External Dependencies
import yaml


#ANCHOR: Globals
try:
    from importlib.metadata import version
    VERSION = version('simumbrella')
except Exception:
    VERSION = 'unknown'
DEFAULT_DEBUG_LEVEL = 0
DEBUG_LEVEL = DEFAULT_DEBUG_LEVEL
FORCE_COLORS = False
PARSERS = {}
OPERATIONS = {}
ALIASES = {
    'status': 'status-all',
    'pull': 'pull-all',
    'push': 'push-all',
}

CONFIG_FILE = '.umbrella.yaml'
SIMS_MANIFEST = 'sims.json'
INSTALLED_SIMS = 'installed-sims.json'
TMP_PREFIX = '.tmp-umbrella-'
VCS_DIR = '.git'
PACKAGE_FILE = 'package.json'
PACKAGE_LOCK = 'package-lock.json'
MODULES_DIR = 'node_modules'
BUILD_FILE = 'build.json'

CHIPPER = 'chipper'
PERENNIAL_REPO = 'perennial'
PERENNIAL_ALIAS = 'perennial-alias'
TOOLING_REPOS = [(CHIPPER, CHIPPER), (PERENNIAL_REPO, PERENNIAL_ALIAS)]
''' (repo name, workspace directory) pairs fetched for every sim '''
TOOLING_NAMES = {CHIPPER, PERENNIAL_REPO, PERENNIAL_ALIAS}


#ANCHOR: Utility Types
class RepoKind(enum.Enum):
    ''' Enumeration used to describe how a repo is present in the workspace (derived from the filesystem). '''

    ABSENT = 'absent'
    ''' No directory in `repos/` '''
    SNAPSHOT = 'zip'
    ''' Unpacked source archive, not tracked by git '''
    LIVE = 'git'
    ''' Full git clone '''

class Style(enum.Enum):
    ''' Enumeration used for text styles. '''

    BOLD    = enum.auto()
    GREEN   = enum.auto()
    RED     = enum.auto()
    YELLOW  = enum.auto()
    GRAY    = enum.auto()

class Config:
    ''' Internal representation of an optional `.umbrella.yaml` file. '''

    TOOLING_MODES = ('snapshot', 'live')

    def __init__(self, path:str=None, raw:typing.Union[dict,str]=None):
        '''
        Args:
            path: path to the `.umbrella.yaml` file (a missing file leaves all defaults in place)
            raw: either a string containing YAML content or a dict representation of it
        '''
        self.owner = 'phetsims'
        ''' GitHub organization that owns every repo '''
        self.git_host = 'github.com'
        ''' Host used for live clones '''
        self.tooling_branch = 'packagelock-umbrella-1'
        ''' Branch of the tooling repos that carries a package-lock.json '''
        self.default_branches = ['main', 'master']
        ''' Branches tried, in order, when downloading a snapshot without a branch hint '''
        self.tooling_mode = 'snapshot'
        ''' How the tooling repos are acquired (`snapshot` or `live`) '''
        self.fold_live_repo_deps = True
        ''' Also fetch the phetLibs of a live repo that differs from its sim '''
        self.dev_server_port = 8123
        ''' Port passed to the chipper dev-server by `umb-dev` '''
        self.repos_dir = 'repos'
        ''' Workspace-relative directory holding every repo '''
        self.path = path
        if raw:
            self.populate(raw)
        elif path and os.path.isfile(path):
            self.read(path)

    def as_dict(self) -> dict:
        ''' Convertor method to dict representation. '''
        return {x:y for x,y in self.__dict__.items() if x != 'path'}

    def read(self, path:str):
        '''
        Read config from file.

        Args:
            path: path to the `.umbrella.yaml` file to read
        '''
        with open(path, 'r') as f:
            content = f.read()
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise Exception(f"Failed to parse {path} due to malformed syntax:\n{e}")
        self.populate(raw)
        self.path = path

    def populate(self, raw:typing.Union[dict,str]):
        '''
        Parses a dict and populates attributes accordingly.

        Args:
            raw: either the content of a `.umbrella.yaml` file represented as a string or a dict
        '''
        if isinstance(raw, str):
            raw = yaml.safe_load(raw) or {}
        if not isinstance(raw, dict):
            raise Exception(f"Expected a mapping at the top level of {self.path or CONFIG_FILE}")
        defaults = self.as_dict()
        mystery_keys = set(raw.keys()) - set(defaults.keys())
        if mystery_keys:
            raise Exception(f"Unexpected keys detected within {self.path or CONFIG_FILE}: {mystery_keys}")
        for key,val in raw.items():
            default_val = defaults[key]
            if isinstance(default_val, bool) or isinstance(val, bool):
                ok = isinstance(val, bool) and isinstance(default_val, bool)
            elif isinstance(default_val, list):
                ok = isinstance(val, list) and bool(val) and all(isinstance(x, str) for x in val)
            else:
                ok = isinstance(val, type(default_val))
            if not ok:
                raise Exception(f"Invalid value {val!r} for '{key}' within {self.path or CONFIG_FILE}")
            self.__dict__[key] = val
        if self.tooling_mode not in Config.TOOLING_MODES:
            raise Exception(f"Invalid tooling_mode '{self.tooling_mode}' (must be one of {', '.join(Config.TOOLING_MODES)})")
        #repos_dir is pruned by remove-sim, so it must be a proper subdirectory of the workspace root
        repos_dir = os.path.normpath(self.repos_dir)
        if os.path.isabs(self.repos_dir) or repos_dir == '.' or '..' in repos_dir.split(os.sep):
            raise Exception(f"Invalid repos_dir '{self.repos_dir}' (must be a relative subdirectory of the workspace root)")

class Manifest:
    ''' Internal representation of the author-maintained `sims.json` file. '''

    class Sim:
        ''' A `sims.json` entry: the sim key, the repo to clone live, and extra snapshot deps. '''
        def __init__(self, sim:str, live_repo:str=None, deps:typing.List[str]=None):
            self.sim = sim
            self.live_repo = live_repo or sim
            self.deps = list(deps or [])

        def __eq__(self, other):
            if not isinstance(other, Manifest.Sim):
                raise Exception(f"Equivalence operation between {type(self)} and {type(other)} is unsupported")
            return self.sim == other.sim and self.live_repo == other.live_repo and self.deps == other.deps

        def __repr__(self):
            return f'Sim({self.sim!r}, live_repo={self.live_repo!r}, deps={self.deps!r})'

    def __init__(self, path:str=None, raw:typing.Union[dict,str]=None):
        '''
        Args:
            path: path to `sims.json`
            raw: either a string containing JSON content or a dict representation of it
        '''
        self.path = path
        ''' Path to the manifest file '''
        self.sims = {}
        ''' Sim key to `Manifest.Sim` dictionary '''
        if raw:
            self.populate(raw)
        elif path:
            self.load()

    def __getitem__(self, key:str) -> 'Manifest.Sim':
        return self.sims[key]

    def __contains__(self, key:str) -> bool:
        return key in self.sims

    def __iter__(self):
        return self.sims.__iter__()

    def __len__(self):
        return len(self.sims)

    def items(self):
        return self.sims.items()

    def load(self):
        ''' Reads the manifest file. A missing or unparseable file leaves the manifest empty. '''
        self.sims = {}
        if not os.path.isfile(self.path):
            debug(f"No {os.path.basename(self.path)} found, every sim uses defaults", level=1)
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            warn(f"Warning: could not read {os.path.basename(self.path)} ({e}). Using defaults.")
            return
        self.populate(raw)

    def populate(self, raw:typing.Union[dict,str]):
        '''
        Parses a dict and populates the sim entries. Entries without a `sim` key are skipped.

        Args:
            raw: either the content of a `sims.json` file represented as a string or a dict
        '''
        if isinstance(raw, str):
            raw = json.loads(raw)
        entries = raw.get('sims') if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            return
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get('sim') or not isinstance(entry['sim'], str):
                continue
            live_repo = entry.get('liveRepo')
            deps = entry.get('deps')
            deps = [x for x in deps if isinstance(x, str)] if isinstance(deps, list) else []
            self.sims[entry['sim']] = Manifest.Sim(entry['sim'], live_repo if isinstance(live_repo, str) else None, deps)

    def resolve(self, sim:str) -> 'Manifest.Sim':
        '''
        Looks up a sim, falling back to a default entry for unknown keys.

        Args:
            sim: sim key

        Returns:
            The manifest entry for `sim`, or one with `live_repo=sim` and no deps.
        '''
        if sim in self.sims:
            return self.sims[sim]
        warn(f"Sim {sim} not in {SIMS_MANIFEST}; defaulting to liveRepo={sim} with no deps.")
        return Manifest.Sim(sim)

class Workspace:
    '''
    A workspace root: its config, its `repos/` directory, the sims manifest and the
    installed-set. Handed to every operation instead of module-level state.
    '''

    def __init__(self, root:str, config:Config=None):
        self.root = os.path.abspath(root)
        ''' Absolute path of the workspace root '''
        self.config = config or Config(os.path.join(self.root, CONFIG_FILE))
        ''' Parsed `.umbrella.yaml` '''
        self.repos_dir = os.path.join(self.root, self.config.repos_dir)
        ''' Directory holding one subdirectory per acquired repo '''
        self.manifest_path = os.path.join(self.root, SIMS_MANIFEST)
        self.installed_path = os.path.join(self.root, INSTALLED_SIMS)
        self._manifest = None

    @property
    def manifest(self) -> Manifest:
        ''' The sims manifest, loaded once per workspace object. '''
        if self._manifest is None:
            self._manifest = Manifest(self.manifest_path)
        return self._manifest

    def ensure(self):
        ''' Creates the repos directory and an empty installed-set if they are missing. '''
        os.makedirs(self.repos_dir, exist_ok=True)
        with self.installed_lock():
            if not os.path.isfile(self.installed_path):
                self.write_installed([])

    def repo_path(self, name:str) -> str:
        return os.path.join(self.repos_dir, name)

    def repo_kind(self, name:str) -> RepoKind:
        '''
        Derives the kind of a workspace repo from the filesystem.

        Args:
            name: directory name under `repos/`

        Returns:
            `RepoKind.LIVE` if git metadata is present, `RepoKind.SNAPSHOT` for any other directory, `RepoKind.ABSENT` otherwise.
        '''
        path = self.repo_path(name)
        if not os.path.isdir(path):
            return RepoKind.ABSENT
        if os.path.exists(os.path.join(path, VCS_DIR)):
            return RepoKind.LIVE
        return RepoKind.SNAPSHOT

    def list_repos(self) -> typing.List[str]:
        ''' Returns the sorted names of every repo directory in the workspace. '''
        if not os.path.isdir(self.repos_dir):
            return []
        return sorted(x for x in os.listdir(self.repos_dir) if os.path.isdir(self.repo_path(x)))

    def find_live_repos(self) -> typing.List[str]:
        ''' Returns the absolute paths of every live (git) repo in the workspace. '''
        return [self.repo_path(x) for x in self.list_repos() if self.repo_kind(x) == RepoKind.LIVE]

    def installed_lock(self) -> FileLock:
        '''
        Lock guarding read-modify-write of the installed-set. Usage:

        ```
        with ws.installed_lock():
            ws.write_installed(ws.read_installed() + [sim])
        ```
        '''
        return FileLock(self.installed_path + '.lock')

    def read_installed(self) -> typing.List[str]:
        ''' Returns the sims recorded by `add-sim`, in stored order. '''
        if not os.path.isfile(self.installed_path):
            return []
        try:
            with open(self.installed_path, 'r', encoding='utf-8') as f:
                ans = json.load(f)
        except (OSError, ValueError) as e:
            raise Exception(f"Failed to parse {self.installed_path}: {e}")
        if not isinstance(ans, list) or not all(isinstance(x, str) for x in ans):
            raise Exception(f"Failed to parse {self.installed_path}: expected a JSON array of sim names")
        return ans

    def write_installed(self, sims:typing.Iterable[str]) -> typing.List[str]:
        '''
        Writes the installed-set, deduplicated and sorted.

        Returns:
            The list as written.
        '''
        sims = sorted(set(sims))
        debug(f"Updating {INSTALLED_SIMS}", level=2)
        with open(self.installed_path, 'w', encoding='utf-8') as f:
            json.dump(sims, f, indent=2)
            f.write('\n')
        return sims


#ANCHOR: Utility Methods
def umb_operation(f):
    ''' Decorator for all command-line operations of `umb`. Handles argument parsing and debug message verbosity. '''
    name = f.__name__.replace('_', '-')
    PARSERS[name] = argparse.ArgumentParser(formatter_class=argparse.RawTextHelpFormatter, prog=f'umb {name}', add_help=True)
    @functools.wraps(f)
    def wrapper(argv:typing.List[str]=None, **kwargs):
        my_args = PARSERS[name].parse_args(sys.argv[1:] if argv is None else argv)
        global DEBUG_LEVEL
        global FORCE_COLORS
        if my_args.verbosity != DEFAULT_DEBUG_LEVEL:
            DEBUG_LEVEL = my_args.verbosity
        if my_args.color:
            FORCE_COLORS = my_args.color
        return f(my_args, **kwargs)
    OPERATIONS[name] = wrapper
    return wrapper

def style(string:str, style_types:typing.Union[list, Style], force:bool=False) -> str:
    '''
    Apply text styling to a given string. Does nothing if the `stdout` is not a terminal.

    Args:
        string: string to style
        style_types: a list of `Style` types to apply to `string`, or a single `Style` enum
        force: removes all existing styling prior to applying new style

    Returns:
        Styled string
    '''
    if not sys.stdout.isatty() and FORCE_COLORS != 'always':
        return string
    if force:
        string = re.sub(r'\033\[\d+m(.*?)\033\[0m', r'\1', string)
    if not isinstance(style_types, list):
        style_types = [style_types]
    codes = {Style.BOLD: 1, Style.GREEN: 92, Style.RED: 91, Style.YELLOW: 93, Style.GRAY: 97}
    for style_type in style_types:
        string = f"\033[{codes[style_type]}m{string}\033[0m"
    return string

def debug(msg:str, level:int=0):
    '''
    Debug message print wrapper.

    Args:
        msg: message to print
        level: verbosity level of message
    '''
    if level <= DEBUG_LEVEL:
        print(msg)

def warn(msg:str):
    '''
    Warning print wrapper (always shown, written to `stderr`).

    Args:
        msg: message to print
    '''
    print(style(msg, Style.YELLOW, force=True), file=sys.stderr)

def error(msg:str):
    '''
    Error message print wrapper (always shown, written to `stderr`).

    Args:
        msg: message to print
    '''
    print(style(msg, Style.RED, force=True), file=sys.stderr)

def _git(args:str, cwd:str=None, interactive:bool=False) -> str:
    '''
    Utility method to execute a git command.

    Args:
        args: arguments of the git command to run
        cwd: directory in which to execute the command
        interactive: interactive mode (stdin and stdout passthrough)

    Returns:
        The stdout and stderr output of the command
    '''
    if not interactive and (sys.stdout.isatty() or FORCE_COLORS == 'always'):
        args = '-c color.ui=always ' + args
    return _exec(['git'] + shlex.split(args), cwd, interactive)

def _exec(cmd:typing.List[str], cwd:str=None, interactive:bool=False, shell:bool=False) -> str:
    '''
    Utility method to execute an arbitrary system command.

    Args:
        cmd: command to execute
        cwd: directory in which to execute the command
        interactive: interactive mode (standard streams are inherited, nothing is captured)
        shell: run `cmd` through the shell

    Returns:
        The stdout and stderr output of the command (empty in interactive mode)
    '''
    cwd = cwd or '.'
    cwdstr = '' if cwd == '.' else f'({cwd})>'
    debug(f'${cwdstr} {args_to_str(cmd)}', level=3)

    if interactive:
        with Popen(cmd, cwd=cwd, shell=shell) as p:
            p.wait()
        if p.returncode:
            raise subprocess.CalledProcessError(p.returncode, cmd, b'')
        return ''

    ans = subprocess.check_output(cmd, cwd=cwd, stderr=STDOUT, shell=shell).decode('utf-8', errors='replace')
    debug(ans.strip(), level=4)
    return ans

def failure_output(e:Exception) -> str:
    ''' Returns the captured output of a failed `_exec` call (or the error text if nothing was captured). '''
    out = getattr(e, 'output', None)
    if isinstance(out, bytes):
        out = out.decode('utf-8', errors='replace')
    return (out or str(e)).strip()

def args_to_str(args:typing.List[str]) -> str:
    '''
    Converts a parsed list of arg strings back into a serialized string.

    Args:
        args: list of arg strings

    Returns:
        A string of all args.
    '''
    return ' '.join([x if ' ' not in x else '"' + x.replace('"', '\\"') + '"' for x in args])

def get_cmd_indenter(level:int=0) -> typing.Callable[[str], str]:
    '''
    Factory for indenter functions for pretty text output.

    Args:
        level: indent level for the produced indenter function

    Returns:
        Indenter formatting function with the specified indent level.
    '''
    indent = ' ' * level + style('> ', Style.GRAY)
    def ans(out):
        return indent + ('\n' + indent).join(out.strip().split('\n'))
    return ans

def remove_path(path:str):
    ''' Removes a directory tree, or just the link if `path` is a symlink. '''
    if os.path.islink(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)

def get_workspace(args:argparse.Namespace) -> Workspace:
    '''
    Builds the workspace for an operation and makes sure its directories exist.

    Args:
        args: parsed operation arguments (uses the universal `--root` option)

    Returns:
        A ready `Workspace`.
    '''
    root = args.root or os.environ.get('UMBRELLA_ROOT') or os.getcwd()
    ws = Workspace(root)
    ws.ensure()
    return ws


#ANCHOR: Repository Acquisition
def snapshot_candidates(owner:str, name:str, branches:typing.List[str]) -> typing.List[str]:
    '''
    Builds the ordered list of archive URLs to try for a repo.

    Args:
        owner: GitHub organization
        name: repo name
        branches: branches to try, in order

    Returns:
        Archive URLs, two per branch.
    '''
    ans = []
    for branch in branches:
        ans.append(f'https://github.com/{owner}/{name}/archive/refs/heads/{branch}.zip')
        ans.append(f'https://api.github.com/repos/{owner}/{name}/zipball/{branch}')
    return ans

def ensure_snapshot(ws:Workspace, name:str, owner:str=None, dest_name:str=None, branch:str=None) -> bool:
    '''
    Downloads and unpacks a repo archive into `repos/<dest_name>` unless that directory already exists.

    Args:
        ws: workspace
        name: repo name on GitHub
        owner: GitHub organization (defaults to the configured owner)
        dest_name: directory name under `repos/` (defaults to `name`)
        branch: only try this branch instead of the configured default branches

    Returns:
        `True` if the repo was fetched, `False` if it was already present.
    '''
    owner = owner or ws.config.owner
    dest_name = dest_name or name
    dest = ws.repo_path(dest_name)
    if os.path.exists(dest):
        debug(f"{dest_name} already present ({ws.repo_kind(dest_name).value}).")
        return False

    candidates = snapshot_candidates(owner, name, [branch] if branch else ws.config.default_branches)

    #Scratch space lives under the workspace root so the final rename never crosses filesystems
    os.makedirs(ws.repos_dir, exist_ok=True)
    tmp_root = tempfile.mkdtemp(prefix=TMP_PREFIX, dir=ws.root)
    zip_path = os.path.join(tmp_root, f'{name}.zip')
    extract_dir = os.path.join(tmp_root, 'extract')
    os.makedirs(extract_dir)
    try:
        for url in candidates:
            debug(f"Downloading {url}...")
            try:
                _exec(['curl', '-fL', '-sS', '-A', 'umbrella-script', '-o', zip_path, url], interactive=True)
                break
            except (subprocess.CalledProcessError, FileNotFoundError):
                debug("Download failed, trying next option...")
        else:
            raise Exception(f"All download attempts failed for {name}")

        try:
            _exec(['unzip', '-q', zip_path, '-d', extract_dir], interactive=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise Exception(f"unzip failed for {name}") from None

        entries = sorted(x for x in os.listdir(extract_dir) if os.path.isdir(os.path.join(extract_dir, x)))
        if len(entries) != 1:
            raise Exception(f"Unexpected zip contents for {name} (expected a single top-level directory, found {len(entries)})")
        os.rename(os.path.join(extract_dir, entries[0]), dest)
        debug(f"{dest_name} downloaded.")
    finally:
        shutil.rmtree(tmp_root, ignore_errors=True)
    return True

def ensure_live(ws:Workspace, name:str, owner:str=None, dest_name:str=None, branch:str=None) -> bool:
    '''
    Shallow clones a repo into `repos/<dest_name>` unless a git clone is already there.
    Any non-git content at the destination (a snapshot or a partial clone) is replaced.

    Args:
        ws: workspace
        name: repo name on the git host
        owner: organization (defaults to the configured owner)
        dest_name: directory name under `repos/` (defaults to `name`)
        branch: branch to clone (defaults to the remote HEAD)

    Returns:
        `True` if the repo was cloned, `False` if it was already present.
    '''
    owner = owner or ws.config.owner
    dest_name = dest_name or name
    dest = ws.repo_path(dest_name)
    if ws.repo_kind(dest_name) == RepoKind.LIVE:
        debug(f"{dest_name} already present (git).")
        return False

    if os.path.lexists(dest):
        debug(f"Removing non-git content at {dest_name}", level=1)
        remove_path(dest)
    os.makedirs(ws.repos_dir, exist_ok=True)
    url = f'https://{ws.config.git_host}/{owner}/{name}.git'
    cmd = ['git', 'clone', '--depth=1', '--single-branch']
    if branch:
        cmd += ['--branch', branch]
    debug(f"Cloning {url}...")
    try:
        _exec(cmd + [url, dest], interactive=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise Exception(f"git clone failed for {name}") from None
    return True

def install_dependencies_if_needed(ws:Workspace, name:str) -> bool:
    '''
    Runs `npm ci` (lockfile present) or `npm install` in a workspace repo that has a
    `package.json` but no `node_modules` yet.

    Returns:
        `True` if npm was run.
    '''
    path = ws.repo_path(name)
    if not os.path.isdir(path):
        return False
    if not os.path.isfile(os.path.join(path, PACKAGE_FILE)):
        debug(f"Skipping npm install in {name} (no {PACKAGE_FILE}).")
        return False
    if os.path.isdir(os.path.join(path, MODULES_DIR)):
        debug(f"npm install already completed in {name}.")
        return False

    npm_cmd = 'ci' if os.path.isfile(os.path.join(path, PACKAGE_LOCK)) else 'install'
    debug(f"Running npm {npm_cmd} in {name}...")
    try:
        _exec(['npm', npm_cmd], cwd=path, interactive=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise Exception(f"npm {npm_cmd} failed in {name}") from None
    return True

def acquire_tooling(ws:Workspace):
    ''' Fetches chipper and perennial-alias (pinned to the tooling branch) and installs their npm dependencies. '''
    debug(f"Fetching base tooling ({CHIPPER}, {PERENNIAL_ALIAS})...")
    for name,dest_name in TOOLING_REPOS:
        if ws.config.tooling_mode == 'live':
            ensure_live(ws, name, dest_name=dest_name, branch=ws.config.tooling_branch)
        else:
            ensure_snapshot(ws, name, dest_name=dest_name, branch=ws.config.tooling_branch)
        install_dependencies_if_needed(ws, dest_name)


#ANCHOR: Dependency Lists
def _read_phet_libs(path:str, keys:typing.Tuple[str,...], label:str) -> typing.List[str]:
    '''
    Reads a `phetLibs` string array out of a JSON file. Never fails.

    Args:
        path: JSON file to read
        keys: key path leading to the array
        label: name used in warnings

    Returns:
        The array (non-string entries dropped), or an empty list if the file is missing or malformed.
    '''
    if not os.path.isfile(path):
        warn(f"Warning: {label} not found, using empty phetLibs.")
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = json.load(f)
    except (OSError, ValueError) as e:
        warn(f"Warning: could not read {label} ({e}).")
        return []
    for key in keys:
        content = content.get(key) if isinstance(content, dict) else None
    if not isinstance(content, list):
        debug(f"No {'.'.join(keys)} list in {label}", level=1)
        return []
    return [x for x in content if isinstance(x, str)]

def read_common_deps(ws:Workspace) -> typing.List[str]:
    ''' Returns `common.phetLibs` from chipper's build.json. '''
    return _read_phet_libs(os.path.join(ws.repo_path(CHIPPER), BUILD_FILE), ('common', 'phetLibs'), f'{CHIPPER}/{BUILD_FILE}')

def read_repo_deps(ws:Workspace, name:str) -> typing.List[str]:
    ''' Returns `phet.phetLibs` from a workspace repo's package.json. '''
    return _read_phet_libs(os.path.join(ws.repo_path(name), PACKAGE_FILE), ('phet', 'phetLibs'), f'{name}/{PACKAGE_FILE}')

def dependency_union(ws:Workspace, entry:Manifest.Sim) -> typing.List[str]:
    '''
    Computes the repos a sim needs as snapshots, from the files currently in the workspace.

    Args:
        ws: workspace
        entry: resolved manifest entry of the sim

    Returns:
        Common deps, sim deps, manifest deps and (optionally) live repo deps, in first-seen
        order without duplicates, minus the tooling repos, the sim and its live repo.
    '''
    excluded = TOOLING_NAMES | {entry.sim, entry.live_repo}
    deps = read_common_deps(ws) + read_repo_deps(ws, entry.sim) + entry.deps
    if entry.live_repo != entry.sim and ws.config.fold_live_repo_deps:
        deps += read_repo_deps(ws, entry.live_repo)
    ans = []
    for dep in deps:
        if dep not in excluded and dep not in ans:
            ans.append(dep)
    return ans

def required_repos(ws:Workspace, sims:typing.Iterable[str]) -> typing.Set[str]:
    '''
    Returns every workspace directory needed by the given sims (tooling repos included).

    Args:
        ws: workspace
        sims: installed sim keys
    '''
    ans = {dest_name for _,dest_name in TOOLING_REPOS}
    for sim in sims:
        entry = ws.manifest.resolve(sim)
        ans |= {entry.sim, entry.live_repo}
        ans |= set(dependency_union(ws, entry))
    return ans

def run_in_live_repos(ws:Workspace, git_args:str, verb:str):
    '''
    Runs a git command in every live repo, stopping at the first failure.

    Args:
        ws: workspace
        git_args: git arguments (e.g. `'pull --ff-only'`)
        verb: progress word (e.g. `'Pulling'`)
    '''
    live_repos = ws.find_live_repos()
    if not live_repos:
        debug(f"No live git repos to {git_args.split()[0]}.")
        return
    for path in live_repos:
        name = os.path.basename(path)
        debug(f"{verb} {style(name, Style.BOLD)}...")
        try:
            _git(git_args, cwd=path, interactive=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise Exception(f"git {git_args.split()[0]} failed in {name}") from None


#ANCHOR: add-sim
@umb_operation
def add_sim(args):
    '''
    Fetch a sim, its live repo, the base tooling and every library it depends on.
    '''
    ws = get_workspace(args)
    sim = (args.sim or '').strip()
    if not sim:
        raise Exception("add-sim requires a sim name, e.g. umb add-sim circuit-construction-kit-dc")

    entry = ws.manifest.resolve(sim)
    live_repo = entry.live_repo

    acquire_tooling(ws)

    #The sim itself must be present before its package.json can be read
    if live_repo != sim:
        ensure_snapshot(ws, sim)
        ensure_live(ws, live_repo)
    else:
        ensure_live(ws, sim)

    zip_repos = dependency_union(ws, entry)
    for repo in zip_repos:
        ensure_snapshot(ws, repo)

    with ws.installed_lock():
        ws.write_installed(ws.read_installed() + [sim])

    debug(style(f"Done. Live repo: {live_repo}. Zip repos: {', '.join(zip_repos) or 'none'}.", Style.GREEN))
    return zip_repos

PARSERS['add-sim'].add_argument('sim', metavar='sim', type=str, nargs='?', default=None, help='Sim to add (e.g. circuit-construction-kit-dc)')


#ANCHOR: remove-sim
@umb_operation
def remove_sim(args):
    '''
    Forget an installed sim and delete every repo no remaining sim needs.
    '''
    ws = get_workspace(args)
    sim = (args.sim or '').strip()
    if not sim:
        raise Exception("remove-sim requires a sim name")

    with ws.installed_lock():
        installed = ws.read_installed()
        if sim not in installed:
            raise Exception(f"Sim '{sim}' is not installed (see `umb list-sims`)")
        remaining = ws.write_installed([x for x in installed if x != sim])

    required = required_repos(ws, remaining)
    removed = []
    for name in ws.list_repos():
        if name in required:
            continue
        if ws.repo_kind(name) == RepoKind.LIVE:
            warn(f"Deleting live repo {name} (local changes are lost)")
        debug(f"Removing {name}")
        remove_path(ws.repo_path(name))
        removed.append(name)
    debug(style(f"Removed {sim}. Deleted repos: {', '.join(removed) or 'none'}.", Style.GREEN))
    return removed

PARSERS['remove-sim'].add_argument('sim', metavar='sim', type=str, nargs='?', default=None, help='Installed sim to remove')


#ANCHOR: list-sims
@umb_operation
def list_sims(args):
    '''
    List installed sims (and, with --all, every sim known to sims.json).
    '''
    ws = get_workspace(args)
    installed = ws.read_installed()
    if args.all:
        for sim in sorted(set(ws.manifest) | set(installed)):
            marker = '*' if sim in installed else ' '
            print(f"{marker} {sim}")
        return installed
    if not installed:
        debug("No sims installed (add one with `umb add-sim <sim>`).")
    for sim in installed:
        print(sim)
    return installed

PARSERS['list-sims'].add_argument('--all', '-a', dest='all', action='store_true', default=False, help='Also list sims from sims.json (installed ones are marked with *)')


#ANCHOR: install-all
@umb_operation
def install_all(args):
    '''
    Install npm dependencies in every workspace repo that has a package.json.
    '''
    ws = get_workspace(args)
    return [name for name in ws.list_repos() if install_dependencies_if_needed(ws, name)]


#ANCHOR: status-all
@umb_operation
def status_all(args):
    '''
    Show `git status --short` for every live repo (keeps going past failures).
    '''
    ws = get_workspace(args)
    live_repos = ws.find_live_repos()
    if not live_repos:
        debug(f"No live git repos found in {ws.config.repos_dir}/ (zip-only environment).")
        return
    cmd_indenter = get_cmd_indenter(2)
    for path in live_repos:
        name = os.path.basename(path)
        debug(style(f"[{name}]", Style.BOLD))
        try:
            out = _git('status --short', cwd=path)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            warn(f"git status failed in {name}:\n{cmd_indenter(failure_output(e))}")
            continue
        if out.strip():
            debug(cmd_indenter(out))
        else:
            debug(style(cmd_indenter('clean'), Style.GRAY, force=True))


#ANCHOR: pull-all
@umb_operation
def pull_all(args):
    '''
    Fast-forward pull every live repo (stops at the first failure).
    '''
    run_in_live_repos(get_workspace(args), 'pull --ff-only', 'Pulling')


#ANCHOR: push-all
@umb_operation
def push_all(args):
    '''
    Push every live repo (stops at the first failure).
    '''
    run_in_live_repos(get_workspace(args), 'push', 'Pushing')


#ANCHOR: clean-all
@umb_operation
def clean_all(args):
    '''
    Delete node_modules from every workspace repo (`umb install-all` restores them).
    '''
    ws = get_workspace(args)
    cleaned = []
    for name in ws.list_repos():
        modules = os.path.join(ws.repo_path(name), MODULES_DIR)
        if os.path.lexists(modules):
            debug(f"Cleaning {name}")
            remove_path(modules)
            cleaned.append(name)
    if not cleaned:
        debug("Nothing to clean.")
    return cleaned


#ANCHOR: start
@umb_operation
def start(args):
    '''
    Run `npm start` in a sim (defaults to the first installed sim).
    '''
    ws = get_workspace(args)
    sim = args.sim
    if not sim:
        installed = ws.read_installed()
        if not installed:
            raise Exception("No sims installed; run `umb add-sim <sim>` first")
        sim = installed[0]
    path = ws.repo_path(sim)
    if not os.path.isdir(path):
        raise Exception(f"{sim} is not in the workspace; run `umb add-sim {sim}` first")
    debug(f"Starting {style(sim, Style.BOLD)}...")
    try:
        _exec(['npm', 'start'], cwd=path, interactive=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise Exception(f"npm start failed in {sim}") from None

PARSERS['start'].add_argument('sim', metavar='sim', type=str, nargs='?', default=None, help='Sim to start')


#ANCHOR: ensure-entr
@umb_operation
def ensure_entr(args):
    '''
    Install `entr` through apt-get if it is missing (best effort, never fails).
    '''
    if shutil.which('entr'):
        debug("entr already available.")
        return True
    if not shutil.which('apt-get'):
        warn("entr not found and apt-get not available; please install entr manually.")
        return False
    debug("Installing entr via apt-get (requires sudo)...")
    for cmd,label in [(['sudo', 'apt-get', 'update'], 'apt-get update'), (['sudo', 'apt-get', 'install', '-y', 'entr'], 'apt-get install entr')]:
        try:
            _exec(cmd, interactive=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            warn(f"{label} failed; please install entr manually.")
            return False
    debug("entr installed.")
    return True


#ANCHOR: help()
@umb_operation
def help(args):
    '''
    Prints the help message.
    '''
    query = args.query
    if query is None:
        print(getattr(sys.modules[__name__], '__doc__'))
        print("## Operations\n")
    query = ALIASES.get(query, query)
    query_found = query is None
    for name,p in PARSERS.items():
        if query is None or name == query:
            print(f'### {name}')
            print('\n    '.join(p.format_help().split('\n')).replace('usage: ', '', 1))
            query_found = True
    if not query_found:
        raise Exception(f"Unknown umb command '{args.query}' specified")

PARSERS['help'].add_argument('query', metavar='command', type=str, nargs='?', default=None, help='Command to describe')


#ANCHOR: Universal Arguments
for name,p in PARSERS.items():
    p.add_argument('--verbosity', '-v', dest='verbosity', action='store', const=1, default=DEFAULT_DEBUG_LEVEL, nargs='?', type=int, help=argparse.SUPPRESS)
    p.add_argument('--color', dest='color', action='store', default=None, help=argparse.SUPPRESS)
    p.add_argument('--root', dest='root', action='store', default=None, help=argparse.SUPPRESS)
    p.description = (OPERATIONS[name].__doc__ or '').strip()


#ANCHOR: Main
def usage() -> str:
    ''' Returns a one-line-per-command usage summary. '''
    lines = ['Usage:']
    for p in PARSERS.values():
        lines.append('  ' + p.format_usage().replace('usage: ', '', 1).strip())
    lines.append(f"  ({', '.join(f'{x} = {y}' for x,y in ALIASES.items())})")
    return '\n'.join(lines)

def main():
    if len(sys.argv) == 1:
        print(usage(), file=sys.stderr)
        sys.exit(1)
    cmd = sys.argv.pop(1)

    if cmd == '--version':
        print(VERSION)
        sys.exit(0)

    cmd = ALIASES.get(cmd, cmd)
    if cmd not in OPERATIONS:
        print(usage(), file=sys.stderr)
        sys.exit(1)

    try:
        OPERATIONS[cmd]()
    except Exception as e:
        if DEBUG_LEVEL:
            raise
        error('Error: ' + str(e))
        sys.exit(1)
    sys.exit(0)

if __name__ == '__main__':
    main()
