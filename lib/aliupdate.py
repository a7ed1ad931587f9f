import collections
import logging
import os
import shlex
import shutil
import subprocess
import tempfile

import git
import regex
import yaml

# Global logger
logger = logging.getLogger(__name__)

# Retry attempts if fetching the configuration fails
retry = 3

# Configuration file expected in configuration repositories
CONFIG_FILE = 'aliupdate.yaml'

# Main ALICE software directory
DEFAULT_ROOT = '~/alice'

# Packages whose latest builds survive purging
DEFAULT_ANCHORS = (('AliPhysics', ''), ('O2', ''))

# Positional package specification fields, in order
PACKAGE_FIELDS = ('name', 'update', 'path', 'upstream', 'fork', 'branch')

# Units used by the human-readable size formatter
SI_UNITS = 'KMGTPEZY'

# Package names as accepted by aliBuild
nre = regex.compile(r'^[A-Za-z0-9][A-Za-z0-9._+-]*$')

# Remote repository URLs, either scheme://... or scp-like user@host:path
ure = regex.compile(r'^(?:[A-Za-z][A-Za-z0-9+.-]*://|[^/:@]+@[^/:]+:)')

# Log record styles
STEP = 'step'
SUBSTEP = 'substep'
SUBSUBSTEP = 'subsubstep'


Build = collections.namedtuple('Build', ['options', 'enabled'])

Package = collections.namedtuple('Package', PACKAGE_FIELDS + ('build',))


class Config(collections.namedtuple('Config', [
        'root', 'architecture', 'alibuild', 'clean', 'purge', 'commits',
        'anchors', 'packages', 'dry_run'])):
    """The immutable run configuration.  Built once by `load_config()` and
    passed to every stage.  Use `_replace()` to derive a modified copy.
    """
    __slots__ = ()

    @property
    def arch_dir(self):
        """Directory with builds of all packages."""
        return os.path.join(self.root, 'sw', self.architecture or '')

    @property
    def build_dir(self):
        """Directory with builds of development packages."""
        return os.path.join(self.root, 'sw', 'BUILD')


class StepFormatter(logging.Formatter):
    """Log formatter presenting the update steps on a terminal.

    Records logged with an `extra={'style': ...}` of `STEP`, `SUBSTEP` or
    `SUBSUBSTEP` are highlighted as headers, warnings and errors are
    colored.  Steps are preceded by an empty line.
    """
    styles = {
        STEP: '\033[1;32m',
        SUBSTEP: '\033[1m',
        SUBSUBSTEP: '\033[4m',
    }
    levels = {
        logging.WARNING: '\033[1;36m',
        logging.ERROR: '\033[1;31m',
        logging.CRITICAL: '\033[1;31m',
    }

    def __init__(self, fmt=None, color=False):
        super().__init__(fmt)
        self.color = color

    def format(self, record):
        s = super().format(record)
        style = getattr(record, 'style', None)
        if self.color:
            esc = self.levels.get(record.levelno) or self.styles.get(style)
            if esc:
                s = '{}{}\033[0m'.format(esc, s)
        if style in (STEP, SUBSTEP):
            s = '\n' + s
        return s


def step(msg, *args):
    logger.info(msg, *args, extra={'style': STEP})

def substep(msg, *args):
    logger.info(msg, *args, extra={'style': SUBSTEP})

def subsubstep(msg, *args):
    logger.info(msg, *args, extra={'style': SUBSUBSTEP})

def loglevel(val=None):
    """Gets or, optionally, sets the logging level of the module.
    Standard numeric levels are accepted.

    :param val: The logging level to use, optional
    :returns: The current logging level
    """
    if val is not None:
        try:
            logger.setLevel(val)
        except ValueError:
            logger.warning('Invalid log level passed to the aliupdate logger: %s', val)
        except Exception:
            logger.exception('Unable to set log level: %s', val)
    return logger.getEffectiveLevel()

def retries(val=None):
    """Gets or, optionally, sets the number of attempts made when fetching
    the configuration from a git repository.

    :param val: The number of retries to attempt, optional
    :returns: The current value of retries
    """
    global retry
    if val is not None:
        retry = val
    return retry

def split_scmurl(scmurl):
    """Splits a `link#ref` style URL into the link and ref parts.
    `link` forms are also accepted, in which case the returned `ref` is None.

    :param scmurl: A link#ref style URL, with #ref being optional
    :returns: A dictionary with `link` and `ref` keys
    """
    scm = scmurl.split('#', 1)
    return {
        'link': scm[0],
        'ref': scm[1] if len(scm) >= 2 and scm[1] else None,
    }

def parse_flag(val):
    """Interprets a configuration flag.  YAML booleans as well as the
    0 and 1 integers of the positional format are accepted.

    :param val: The raw value
    :returns: True or False, or None if the value is not a flag
    """
    if isinstance(val, bool):
        return val
    if isinstance(val, int) and val in (0, 1):
        return bool(val)
    if isinstance(val, str) and val.strip() in ('0', '1'):
        return val.strip() == '1'
    return None

def parse_package(spec):
    """Validates a single package specification and turns it into
    a `Package`.

    Two forms are accepted.  The positional one is a list of
    `[name, update, path, upstream, fork, branch]`, optionally followed by
    both the build options and the build flag.  The mapping one uses the
    same names as keys plus an optional `build` mapping with `options`
    and `enabled`.

    :param spec: The package specification as loaded from YAML
    :returns: The Package, or None on error
    """
    if isinstance(spec, (list, tuple)):
        if not spec:
            logger.error('Configuration error: empty package specification.')
            return None
        name = str(spec[0])
        if len(spec) < len(PACKAGE_FIELDS):
            logger.error('Package %s: incomplete list of parameters.', name)
            return None
        if len(spec) not in (len(PACKAGE_FIELDS), len(PACKAGE_FIELDS) + 2):
            logger.error('Package %s: build options and build flag must be given together.', name)
            return None
        fields = dict(zip(PACKAGE_FIELDS, spec))
        if len(spec) > len(PACKAGE_FIELDS):
            fields['build'] = {'options': spec[6], 'enabled': spec[7]}
    elif isinstance(spec, dict):
        fields = dict(spec)
        name = str(fields.get('name') or '?')
        for k in PACKAGE_FIELDS:
            if k not in fields:
                logger.error('Package %s: %s missing.', name, k)
                return None
    else:
        logger.error('Configuration error: package specification must be a list or a mapping.')
        return None
    if not nre.match(name):
        logger.error('Package %s: invalid package name.', name)
        return None
    update = parse_flag(fields['update'])
    if update is None:
        logger.error('Package %s: update flag must be 0 or 1, got %s.', name, fields['update'])
        return None
    if not fields['path']:
        logger.error('Package %s: path must not be empty.', name)
        return None
    for k in ('upstream', 'branch'):
        if update and not fields[k]:
            logger.error('Package %s: %s must not be empty.', name, k)
            return None
    build = fields.get('build')
    if build is not None:
        if not isinstance(build, dict):
            logger.error('Package %s: build must be a mapping.', name)
            return None
        for k in ('options', 'enabled'):
            if k not in build:
                logger.error('Package %s: build.%s missing.', name, k)
                return None
        enabled = parse_flag(build['enabled'])
        if enabled is None:
            logger.error('Package %s: build flag must be 0 or 1, got %s.', name, build['enabled'])
            return None
        options = str(build['options']) if build['options'] is not None else ''
        try:
            shlex.split(options)
        except ValueError:
            logger.error('Package %s: cannot parse build options "%s".', name, options)
            return None
        build = Build(options=options, enabled=enabled)
    return Package(
        name=name,
        update=update,
        path=os.path.abspath(os.path.expanduser(str(fields['path']))),
        upstream=str(fields['upstream']) if fields['upstream'] else None,
        fork=str(fields['fork']) if fields['fork'] else None,
        branch=str(fields['branch']) if fields['branch'] else None,
        build=build,
    )

def fetch_config(crepo):
    """Reads the configuration YAML from a `link#ref` git repository.
    If no ref is provided, assumes `master`.

    :param crepo: `link#ref` style URL pointing to the configuration
    :returns: The parsed YAML document, or None on error
    """
    scm = split_scmurl(crepo)
    if scm['ref'] is None:
        scm['ref'] = 'master'
    with tempfile.TemporaryDirectory(prefix='aliupdate-') as tmp:
        logger.info('Fetching configuration from %s to %s', crepo, tmp)
        for attempt in range(retry):
            cdir = os.path.join(tmp, str(attempt))
            try:
                git.Repo.clone_from(scm['link'], cdir).git.checkout(scm['ref'])
            except Exception:
                logger.warning('Failed to fetch configuration, retrying (#%d).', attempt + 1, exc_info=True)
                continue
            else:
                logger.info('Configuration fetched successfully.')
                break
        else:
            logger.error('Failed to fetch configuration, giving up.')
            return None
        cfile = os.path.join(cdir, CONFIG_FILE)
        if not os.path.isfile(cfile):
            logger.error('Configuration repository does not contain %s.', CONFIG_FILE)
            return None
        return read_config(cfile)

def read_config(path):
    """Parses a YAML configuration file.

    :param path: Path to the file
    :returns: The parsed YAML document, or None on error
    """
    try:
        with open(path) as f:
            y = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        logger.exception('Could not parse %s.', path)
        return None
    logger.debug('%s loaded, processing.', path)
    return y

def load_config(source):
    """Loads the configuration.  `source` is either a path to a YAML file
    or a `link#ref` git URL of a repository containing `aliupdate.yaml`.
    Sources with a `#ref` or a remote URL are fetched with git, anything
    else is read as a local file.

    All package specifications are validated here, so an invalid one fails
    the run before any repository is touched.

    :param source: The configuration file or repository
    :returns: The Config, or None on error
    """
    if split_scmurl(source)['ref'] is not None or ure.match(source):
        y = fetch_config(source)
    else:
        path = os.path.expanduser(source)
        if not os.path.isfile(path):
            logger.error('Could not read %s.', path)
            return None
        logger.info('Loading configuration from %s', path)
        y = read_config(path)
    if y is None:
        return None
    if not isinstance(y, dict):
        logger.error('Configuration error: the configuration must be a mapping.')
        return None
    cnf = y.get('configuration') or dict()
    if not isinstance(cnf, dict):
        logger.error('Configuration error: configuration must be a mapping.')
        return None
    n = dict()
    n['root'] = os.path.abspath(os.path.expanduser(str(cnf.get('root') or DEFAULT_ROOT)))
    n['architecture'] = str(cnf['architecture']) if cnf.get('architecture') else None
    n['alibuild'] = str(cnf.get('alibuild') or 'aliBuild')
    for k, default in (('clean', True), ('purge', False), ('commits', True)):
        n[k] = parse_flag(cnf.get(k, default))
        if n[k] is None:
            logger.error('Configuration error: %s must be a boolean.', k)
            return None
    if 'anchors' in cnf:
        if not isinstance(cnf['anchors'], dict):
            logger.error('Configuration error: anchors must be a mapping.')
            return None
        anchors = list()
        for name, options in cnf['anchors'].items():
            if not nre.match(str(name)):
                logger.error('Configuration error: invalid anchor package name %s.', name)
                return None
            anchors.append((str(name), str(options) if options is not None else ''))
        n['anchors'] = tuple(anchors)
    else:
        n['anchors'] = DEFAULT_ANCHORS
    if 'packages' not in y:
        logger.error('Configuration error: packages missing.')
        return None
    if not isinstance(y['packages'], list):
        logger.error('Configuration error: packages must be a list.')
        return None
    packages = list()
    for spec in y['packages']:
        pkg = parse_package(spec)
        if pkg is None:
            return None
        packages.append(pkg)
    n['packages'] = tuple(packages)
    logger.info('Found %d configured package(s).', len(packages))
    if n['purge'] and not n['clean']:
        logger.warning('Configuration warning: purge has no effect while clean is disabled.')
    return Config(dry_run=False, **n)

def check_tools(cfg):
    """Checks that the external tools are available.

    :param cfg: The configuration
    :returns: True if all tools were found, False otherwise
    """
    missing = [t for t in ('git', cfg.alibuild) if shutil.which(t) is None]
    for t in missing:
        logger.error('%s not found.', t)
    return not missing

def run_command(cmd, cwd=None, quiet=False, capture=False):
    """Runs an external command and waits for it to finish.  The output goes
    to the terminal unless captured or silenced.

    :param cmd: The command argument list
    :param cwd: Working directory for the command, optional
    :param quiet: Discard all output
    :param capture: Capture the standard output
    :returns: A tuple of the exit status and the captured output, or None if the command could not be run
    """
    logger.debug('Running %s in %s.', ' '.join(shlex.quote(x) for x in cmd), cwd or os.getcwd())
    if capture:
        out = subprocess.PIPE
    else:
        out = subprocess.DEVNULL if quiet else None
    try:
        proc = subprocess.Popen(cmd, cwd=cwd, stdout=out,
                                stderr=subprocess.DEVNULL if quiet else None,
                                universal_newlines=True)
        out, _ = proc.communicate()
    except OSError:
        logger.exception('Failed to run %s.', cmd[0])
        return None
    return proc.returncode, out

def get_architecture(cfg):
    """Queries aliBuild for the system architecture.

    :param cfg: The configuration
    :returns: The architecture string, or None on error
    """
    res = run_command([cfg.alibuild, 'architecture'], capture=True)
    if res is None or res[0] != 0:
        logger.error('Failed to determine the system architecture.')
        return None
    arch = res[1].strip()
    if not arch:
        logger.error('%s reported an empty architecture.', cfg.alibuild)
        return None
    logger.debug('Detected architecture: %s', arch)
    return arch

def package_summary(pkg):
    """Describes a package specification.

    :param pkg: The Package
    :returns: A list of summary lines
    """
    lines = [
        'Package: {}'.format(pkg.name),
        'Update: {:d}'.format(pkg.update),
        'Repository: {}'.format(pkg.path),
        'Upstream remote: {}'.format(pkg.upstream or ''),
        'Fork remote: {}'.format(pkg.fork or ''),
        'Main branch: {}'.format(pkg.branch or ''),
    ]
    if pkg.build is not None:
        lines.append('Build: {:d}'.format(pkg.build.enabled))
        lines.append('Build options: {}'.format(pkg.build.options))
    return lines

def current_branch(repo):
    return repo.git.rev_parse('--abbrev-ref', 'HEAD')

def stash_count(repo):
    return len(repo.git.stash('list').splitlines())

def update_branch(repo, upstream, main, branch, fork=None, dry_run=False):
    """Updates a branch and pushes it to the fork, if specified.

    The branch is rebased onto the same branch of the fork first, picking
    up commits pushed from other clones, and then onto the main branch of
    the upstream remote.  The result is force-pushed to the fork.

    :param repo: The git.Repo to work with
    :param upstream: The upstream remote
    :param main: The main branch
    :param branch: The branch to update
    :param fork: The fork remote, optional
    :param dry_run: Only pretend to push
    :returns: True, or None on error
    """
    substep('- Updating branch %s', branch)
    try:
        repo.git.checkout(branch)
        if fork:
            subsubstep('-- Updating branch %s from %s/%s', branch, fork, branch)
            repo.git.pull('--rebase', fork, branch)
        subsubstep('-- Updating branch %s from %s/%s', branch, upstream, main)
        repo.git.pull('--rebase', upstream, main)
        if fork:
            if not dry_run:
                subsubstep('-- Pushing branch %s to %s', branch, fork)
                repo.git.push('-f', fork, branch)
            else:
                subsubstep('-- Pushing branch %s to %s (--dry-run)', branch, fork)
                repo.git.push('--dry-run', '-f', fork, branch)
    except git.exc.GitCommandError as e:
        logger.error('Failed to update branch %s in %s: %s', branch, repo.working_dir, e)
        return None
    return True

def sync_repo(pkg, dry_run=False):
    """Synchronizes the package repository with its remotes.

    Uncommitted changes are stashed, the main branch and the current branch
    are updated with `update_branch()` and the stash is restored.  Nothing
    is done if HEAD is detached.  A stash is left in place if an update
    fails.

    :param pkg: The Package
    :param dry_run: Only pretend to push
    :returns: The commit hash of HEAD after the update, or None on error
    """
    try:
        repo = git.Repo(pkg.path)
    except git.exc.NoSuchPathError:
        logger.error('Package %s: repository %s does not exist.', pkg.name, pkg.path)
        return None
    except git.exc.InvalidGitRepositoryError:
        logger.error('Package %s: %s is not a git repository.', pkg.name, pkg.path)
        return None
    try:
        branch = current_branch(repo)
    except git.exc.GitCommandError as e:
        logger.error('Package %s: cannot determine the current branch: %s', pkg.name, e)
        return None
    logger.info('Current branch: %s', branch)
    if branch == 'HEAD':
        substep('- Skipping update because of detached HEAD')
    else:
        substep('- Stashing potential uncommitted local changes')
        try:
            nstash = stash_count(repo)
            repo.git.stash()
            stashed = stash_count(repo) != nstash
        except git.exc.GitCommandError as e:
            logger.error('Package %s: failed to stash local changes: %s', pkg.name, e)
            return None
        logger.debug('Local changes stashed: %s', stashed)
        if update_branch(repo, pkg.upstream, pkg.branch, pkg.branch, pkg.fork, dry_run) is None:
            return None
        if branch != pkg.branch:
            if update_branch(repo, pkg.upstream, pkg.branch, branch, pkg.fork, dry_run) is None:
                return None
        if stashed:
            substep('- Unstashing uncommitted local changes')
            try:
                repo.git.stash('pop')
            except git.exc.GitCommandError as e:
                logger.error('Package %s: failed to restore stashed changes: %s', pkg.name, e)
                return None
    try:
        return repo.git.rev_parse('HEAD')
    except git.exc.GitCommandError as e:
        logger.error('Package %s: cannot resolve HEAD: %s', pkg.name, e)
        return None

def build_package(cfg, name, options='', quiet=False):
    """Builds a package with aliBuild in the root directory.

    In the dry run mode, the command is only logged.

    :param cfg: The configuration
    :param name: The package name
    :param options: Build options, split like a shell would split them
    :param quiet: Discard the build output
    :returns: The aliBuild command argument list, or None on error
    """
    if not name:
        logger.error('Empty package name.')
        return None
    if not cfg.architecture:
        logger.error('System architecture unknown, cannot build %s.', name)
        return None
    try:
        cmd = [cfg.alibuild, 'build', name] + shlex.split(options or '') + ['-a', cfg.architecture]
    except ValueError:
        logger.error('Cannot parse build options of %s: %s', name, options)
        return None
    if cfg.dry_run:
        logger.info('Running in the dry run mode, not building %s (%s).', name, ' '.join(cmd))
        return cmd
    res = run_command(cmd, cwd=cfg.root, quiet=quiet)
    if res is None:
        return None
    if res[0] != 0:
        logger.error('Building %s failed with exit status %d.', name, res[0])
        return None
    logger.debug('Successfully built %s.', name)
    return cmd

def update_package(cfg, pkg):
    """Does the full update of a package: synchronizes the repository if
    updates are enabled and builds the package if building is enabled.

    :param cfg: The configuration
    :param pkg: The Package
    :returns: True, or None on error
    """
    step('Updating %s', pkg.name)
    if pkg.update:
        if sync_repo(pkg, dry_run=cfg.dry_run) is None:
            logger.error('Failed to update the %s repository.', pkg.name)
            return None
    else:
        logger.info('Update deactivated. Skipping')
    if pkg.build is not None and pkg.build.enabled:
        substep('- Building %s', pkg.name)
        if build_package(cfg, pkg.name, pkg.build.options) is None:
            logger.error('Failed to build %s.', pkg.name)
            return None
    return True

def get_size(path):
    """Measures the disk usage of a directory tree the way `du -s` does:
    allocated blocks are counted, symbolic links are not followed and hard
    linked files are counted once.

    :param path: The tree root
    :returns: The size in bytes
    """
    seen = set()

    def usage(p):
        st = os.lstat(p)
        if (st.st_dev, st.st_ino) in seen:
            return 0
        seen.add((st.st_dev, st.st_ino))
        return st.st_blocks * 512

    total = usage(path)
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            try:
                total += usage(os.path.join(dirpath, name))
            except FileNotFoundError:
                logger.debug('%s vanished while measuring %s.', os.path.join(dirpath, name), path)
    return total

def format_size(num):
    """Formats a number the way `numfmt --to=si` does, rounding away from
    zero, e.g. 999 -> 999, 1001 -> 1.1K, 12345 -> 13K.

    :param num: The number to format
    :returns: The formatted string
    """
    sign = '-' if num < 0 else ''
    num = abs(int(num))
    if num < 1000:
        return '{}{}'.format(sign, num)
    power = 1
    while power < len(SI_UNITS) and num >= 1000 ** (power + 1):
        power += 1
    div = 1000 ** power
    if num < 10 * div:
        tenths = -(-num * 10 // div)
        if tenths < 100:
            return '{}{}.{}{}'.format(sign, tenths // 10, tenths % 10, SI_UNITS[power - 1])
        return '{}10{}'.format(sign, SI_UNITS[power - 1])
    whole = -(-num // div)
    if whole >= 1000 and power < len(SI_UNITS):
        return '{}1.0{}'.format(sign, SI_UNITS[power])
    return '{}{}{}'.format(sign, whole, SI_UNITS[power - 1])

def build_links(cfg):
    """Lists the symlinks to builds: the ones in package directories under
    the architecture directory and the ones directly under BUILD.

    :param cfg: The configuration
    :returns: A sorted list of symlink paths
    """
    links = list()
    with os.scandir(cfg.arch_dir) as it:
        for entry in it:
            if entry.is_dir(follow_symlinks=False):
                with os.scandir(entry.path) as pit:
                    links.extend(e.path for e in pit if e.is_symlink())
    with os.scandir(cfg.build_dir) as it:
        links.extend(e.path for e in it if e.is_symlink())
    return sorted(links)

def purge_builds(cfg):
    """Deletes all symlinks to builds so that `aliBuild clean` can delete
    every build except the latest ones of the anchor packages.

    aliBuild only creates the latest symlinks when a package needs to be
    rebuilt, so the anchors are rebuilt to recreate the symlinks of their
    dependencies and the anchors' own latest symlinks are restored
    manually, pointing to the same builds as before.

    :param cfg: The configuration
    :returns: A dictionary mapping the restored symlinks to their targets, or None on error
    """
    subsubstep('-- Checking existence of the build directories')
    for d in (cfg.arch_dir, cfg.build_dir):
        if not os.path.isdir(d):
            logger.error('Build directory %s does not exist.', d)
            return None
    names = [name for name, _ in cfg.anchors]
    subsubstep('-- Getting paths to latest builds of %s', ', '.join(names))
    latest = dict()
    for name in names:
        for link in (os.path.join(cfg.build_dir, name + '-latest'),
                     os.path.join(cfg.arch_dir, name, 'latest')):
            target = os.path.realpath(link)
            if not os.path.isdir(target):
                logger.error('Cannot resolve the latest build of %s: %s', name, link)
                return None
            logger.info('%s', target)
            latest[link] = target
    if cfg.dry_run:
        logger.info('Running in the dry run mode, not purging builds.')
        return latest
    subsubstep('-- Deleting symlinks to all builds')
    try:
        for link in build_links(cfg):
            logger.debug('Deleting %s', link)
            os.unlink(link)
    except OSError:
        logger.exception('Failed to delete symlinks to builds.')
        return None
    for name, options in cfg.anchors:
        subsubstep('-- Re-building %s to recreate symlinks', name)
        if build_package(cfg, name, options, quiet=True) is None:
            return None
    subsubstep('-- Recreating symlinks to the latest builds of %s', ', '.join(names))
    restored = dict()
    for link, target in latest.items():
        dest = os.path.join(os.path.dirname(target), os.path.basename(link))
        try:
            if os.path.islink(dest):
                os.unlink(dest)
            os.symlink(os.path.basename(target), dest)
        except OSError:
            logger.exception('Failed to recreate %s.', dest)
            return None
        logger.debug('%s -> %s', dest, os.path.basename(target))
        restored[dest] = target
    return restored

def clean(cfg):
    """Deletes obsolete builds, purging build symlinks first if configured,
    and reports the reclaimed disk space.  A growing tree is reported as
    nothing freed.

    :param cfg: The configuration
    :returns: The number of bytes freed, or None on error
    """
    step('Cleaning aliBuild files')
    if not cfg.architecture:
        logger.error('System architecture unknown, cannot clean.')
        return None
    if cfg.dry_run:
        logger.info('Running in the dry run mode, not cleaning %s.', cfg.root)
        return 0
    try:
        before = get_size(cfg.root)
    except OSError:
        logger.exception('Cannot measure the size of %s.', cfg.root)
        return None
    if cfg.purge:
        substep('- Purging builds')
        if purge_builds(cfg) is None:
            return None
    substep('- Deleting obsolete builds')
    res = run_command([cfg.alibuild, 'clean', '-a', cfg.architecture], cwd=cfg.root)
    if res is None or res[0] != 0:
        logger.error('Failed to delete obsolete builds.')
        return None
    try:
        after = get_size(cfg.root)
    except OSError:
        logger.exception('Cannot measure the size of %s.', cfg.root)
        return None
    freed = before - after
    if freed < 0:
        logger.warning('%s grew by %sB during cleaning.', cfg.root, format_size(-freed))
        freed = 0
    logger.info('Freed up %sB disk space.', format_size(freed))
    return freed

def last_commit(path):
    """Describes the current state of a repository.

    :param path: The repository path
    :returns: The current branch followed by the date, short hash and subject of the last commit, or None on error
    """
    try:
        repo = git.Repo(path)
        branch = current_branch(repo)
        commit = repo.git.log('-n', '1', '--pretty=format:%ci %h %s')
    except (git.exc.NoSuchPathError, git.exc.InvalidGitRepositoryError, git.exc.GitCommandError):
        logger.debug('Cannot read the last commit of %s.', path, exc_info=True)
        return None
    return '{} {}'.format(branch, commit)

def print_commits(cfg):
    """Logs the last commit of every package repository.  Repositories
    that cannot be read are reported with a warning.

    :param cfg: The configuration
    :returns: True
    """
    step('Latest commits')
    for pkg in cfg.packages:
        commit = last_commit(pkg.path)
        if commit is None:
            logger.warning('%s: cannot read the last commit.', pkg.name)
            continue
        logger.info('%s: %s', pkg.name, commit)
    return True

def run(cfg):
    """Runs the whole update: package summaries, updates and builds of all
    packages in order, cleaning and the commit overview.  Stops at the first
    failure.

    :param cfg: The configuration
    :returns: True, or None on error
    """
    for pkg in cfg.packages:
        for line in package_summary(pkg):
            logger.info('%s', line)
        logger.info('')
    for pkg in cfg.packages:
        if update_package(cfg, pkg) is None:
            return None
    if cfg.clean and clean(cfg) is None:
        return None
    if cfg.commits and print_commits(cfg) is None:
        return None
    step('Done')
    return True
