import argparse
import datetime
import functools
import logging
import os
import pathlib
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass

from packaging.version import Version
from portage import output, colorize

__version__ = "0.1"

# default number of parallel build jobs
jobs = 20

# default CONFIG_LOCALVERSION
localversion = "-autonuma-eBPF-010726"

# filesystem root
root = pathlib.Path("/")

# gentoo's fancy terminal output functions
out = output.EOutput()
out.print = lambda s: print(s) if not out.quiet else None
out.green = lambda s: colorize("green", s if isinstance(s, str) else str(s))
out.red = lambda s: colorize("red", s if isinstance(s, str) else str(s))
out.teal = lambda s: colorize("teal", s if isinstance(s, str) else str(s))
out.yellow = lambda s: colorize("yellow", s if isinstance(s, str) else str(s))

# disable colorization for pipes and redirects
if not sys.stdout.isatty():
    output.havecolor = 0

# session log
log = logging.getLogger("kernelctl")

# raw command output, appended to the session log
tee = logging.getLogger("kernelctl.output")
tee.propagate = False

# banner lines written by script(1)
typescript = re.compile(r"^Script (started|done) on ")

class EOutputHandler (logging.Handler):
    """Mirror log records to the terminal through portage's EOutput."""

    def emit (self, record):
        try:
            msg = self.format(record)
            if record.levelno >= logging.ERROR:
                out.eerror(msg)
            elif record.levelno >= logging.WARNING:
                out.ewarn(msg)
            else:
                out.einfo(msg)
        except Exception:
            self.handleError(record)

class CommandError (RuntimeError):
    """Raised when a wrapped command exits with a nonzero status."""

    def __init__ (self, desc, argv, returncode=None):
        self.desc = desc
        self.argv = argv
        self.returncode = returncode
        super().__init__(f"error: command failed: {desc}")

def logfile (name):
    """Get the session log path, honoring ``LOG_FILE``."""
    path = os.environ.get("LOG_FILE")
    if not path:
        stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        path = pathlib.Path.cwd() / f"{name}_{stamp}.log"
    return pathlib.Path(path).absolute()

def setup_logging (path):
    """
    Start a fresh session log.

    Truncates ``path`` and routes both loggers into it. Leveled records are
    also mirrored to the terminal.

    Returns:
        pathlib.Path: the absolute log path
    """
    path = pathlib.Path(path).absolute()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")
    except OSError as e:
        raise RuntimeError(f"error: unable to write to {path}") from e

    for logger in (log, tee):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.INFO)

    records = logging.FileHandler(path)
    records.setFormatter(logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    console = EOutputHandler()
    console.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(records)
    log.addHandler(console)

    raw = logging.FileHandler(path)
    raw.setFormatter(logging.Formatter("%(message)s"))
    tee.addHandler(raw)

    log.info(f"logging output to {path}")
    return path

def cli (f):
    """A top level exception handling decorator for script main functions."""
    @functools.wraps(f)
    def handler (argv=sys.argv[1:]):
        try:
            r = f(argv)
            return 0 if r is None else r
        except Exception as e:
            log.error(str(e))
            sys.exit(1)
    return handler

def privileged ():
    """Return True if running as root."""
    return os.geteuid() == 0

def sudo (argv):
    """Prefix a command with sudo unless we're root already."""
    return list(argv) if privileged() else ["sudo"] + list(argv)

def run (desc, argv, tty=False):
    """
    Run a command, logging its output.

    Args:
        desc (str): human readable description
        argv (list): the command
        tty (bool): run inside a pseudo-terminal (for full-screen tools)

    Raises:
        CommandError: if the command can't be started or fails
    """
    argv = [str(a) for a in argv]
    if not argv:
        raise ValueError(f"error: missing command for {desc}")
    cmd = shlex.join(argv)
    log.info(desc)
    log.info(f"command: {cmd}")

    if tty:
        returncode = _run_tty(cmd)
    else:
        returncode = _run_plain(desc, argv)

    if returncode != 0:
        raise CommandError(desc, argv, returncode)
    log.info(f"completed: {desc}")

def _run_plain (desc, argv):
    try:
        proc = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace"
        )
    except OSError as e:
        raise CommandError(desc, argv) from e
    with proc.stdout:
        for line in proc.stdout:
            if not out.quiet:
                sys.stdout.write(line)
                sys.stdout.flush()
            tee.info(line.rstrip("\n"))
    return proc.wait()

def _run_tty (cmd):
    if shutil.which("script") is None:
        raise RuntimeError(
            "error: the 'script' utility is required for interactive command "
            "logging"
        )
    fd, name = tempfile.mkstemp(prefix="kernelctl-", suffix=".typescript")
    os.close(fd)
    session = pathlib.Path(name)
    try:
        proc = subprocess.run(["script", "-q", "-e", "-f", name, "-c", cmd])
        for line in session.read_text(errors="replace").splitlines():
            if not typescript.match(line):
                tee.info(line)
    finally:
        session.unlink(missing_ok=True)
    return proc.returncode

def ask (prompt, default=None):
    """
    Prompt for a value.

    Without a default, keep asking until something other than whitespace is
    entered. With a default, empty input selects it.
    """
    while True:
        value = input(out.teal(prompt)).strip()
        if value:
            return value
        if default is not None:
            return default
        out.ewarn("input required, please try again")

def confirm (prompt):
    """Ask a yes/no question, defaulting to no."""
    return input(out.yellow(prompt)).strip() in ("y", "Y")

def parse_jobs (text):
    """Parse the number of parallel make jobs."""
    if not re.fullmatch(r"[0-9]+", text) or int(text) <= 0:
        raise ValueError(f"error: invalid parallel job count: {text}")
    return int(text)

def unquote (text):
    """Strip one pair of surrounding double quotes, if any."""
    return text.removesuffix('"').removeprefix('"')

def abspath (path):
    """Canonicalize a path, which doesn't need to exist."""
    return pathlib.Path(os.path.realpath(os.path.abspath(path)))

def resolve (base, path):
    """Canonicalize a path relative to the given base directory."""
    path = pathlib.Path(path)
    if path.is_absolute():
        return abspath(path)
    return abspath(pathlib.Path(base) / path)

def populated (path):
    """Return True if path is a directory containing anything at all."""
    path = pathlib.Path(path)
    return path.is_dir() and any(path.iterdir())

def version (string: str):
    """Extract the version from a given kernel release string."""
    match = re.match(r"(\d+)\.(\d+)(?:\.(\d+))?", string)
    if not match:
        raise ValueError(f"error: illegal kernel release {string}")
    return Version(".".join(filter(None, match.groups())))

@dataclass(frozen=True)
class Session:
    """Build parameters, fixed before the first command runs."""

    src: pathlib.Path
    build: pathlib.Path
    jobs: int
    localversion: str

    @property
    def config (self):
        return self.build / ".config"

    @classmethod
    def prompt (cls):
        """Interactively collect a build session."""
        src = abspath(ask("kernel source directory path: "))
        if not src.is_dir():
            raise FileNotFoundError(f"error: missing kernel source {src}")
        if not (src / "Makefile").is_file():
            raise FileNotFoundError(
                f"error: missing Makefile in {src}, "
                "please provide a valid kernel tree"
            )
        log.info(f"kernel source: {src}")

        build = resolve(src, ask(
            "build directory (absolute or relative to the kernel source): "
        ))
        log.info(f"requested build directory: {build}")
        if populated(build):
            if not confirm(
                "build directory is not empty, "
                "reuse existing contents? [y/N]: "
            ):
                raise RuntimeError("error: aborting at user request")

        n = parse_jobs(ask(
            f"parallel build jobs for make (-j) [{jobs}]: ",
            str(jobs)
        ))
        log.info(f"parallel jobs: {n}")

        suffix = unquote(ask(
            f"CONFIG_LOCALVERSION (without quotes) [{localversion}]: ",
            localversion
        )) or localversion
        log.info(f"CONFIG_LOCALVERSION target: {suffix}")

        return cls(src, build, n, suffix)

def read_localversion (config):
    """
    Scan a kernel config for ``CONFIG_LOCALVERSION``.

    Returns:
        str: the configured value or None if unset
    """
    for line in pathlib.Path(config).read_text().splitlines():
        if line.startswith("CONFIG_LOCALVERSION="):
            return unquote(line.split("=", maxsplit=1)[1])
    return None

def set_localversion (session):
    """Force CONFIG_LOCALVERSION to the requested suffix."""
    run("setting CONFIG_LOCALVERSION", [
        "./scripts/config",
        "--file", session.config,
        "--set-str", "CONFIG_LOCALVERSION", session.localversion
    ])

def verify_localversion (session):
    """Ensure the generated config carries the requested suffix."""
    log.info("verifying CONFIG_LOCALVERSION")
    for line in session.config.read_text().splitlines():
        if line.startswith("CONFIG_LOCALVERSION"):
            tee.info(line)
    value = read_localversion(session.config)
    if value != session.localversion:
        raise RuntimeError(
            f"error: CONFIG_LOCALVERSION is {value!r}, "
            f"expected {session.localversion!r}"
        )
    log.info("completed: verifying CONFIG_LOCALVERSION")

class Kernel:

    # boot partition
    boot = pathlib.Path("/boot")

    # module directory
    modules = pathlib.Path("/lib/modules")

    # kernel header directory
    headers = pathlib.Path("/usr/src")

    # files installed into /boot, prefixed to "-<release>"
    images = [
        "vmlinuz",
        "System.map",
        "config",
        "initrd.img",
        "abi",
        "retpoline"
    ]

    def __init__ (self, release, build=None):
        """Construct a Kernel based on a given release string."""
        if not release:
            raise ValueError("error: missing kernel release")
        if "/" in release or release in (".", ".."):
            raise ValueError(f"error: illegal kernel release {release}")
        self.release = release
        self.build = pathlib.Path(build) if build else None
        self.images = [self.boot / f"{i}-{release}" for i in self.images]
        self.images.append(self.boot / f"initrd.img-{release}.old")
        self.modules = self.modules / release
        self.headers = self.headers / f"linux-headers-{release}"

    def __eq__ (self, other):
        if not isinstance(other, Kernel):
            return False
        return self.release == other.release

    def __str__ (self):
        s = (
            f"{self.release}\n"
            f"* images  = {', '.join(i.name for i in self.images)}\n"
            f"* modules = {self.modules}\n"
            f"* headers = {self.headers}\n"
        )
        if self.build:
            s += f"* build   = {self.build}\n"
        return s

    @property
    def version (self):
        try:
            return version(self.release)
        except ValueError:
            return Version("0")

    @classmethod
    def list (cls, descending=True):
        """Get a descending list of installed kernels."""
        if not cls.modules.is_dir():
            return []
        return list(sorted(
            (Kernel(d.name) for d in cls.modules.iterdir() if d.is_dir()),
            key=lambda k: k.version,
            reverse=descending
        ))

    @classmethod
    def locate (cls, release):
        """
        Find the build directory of an installed kernel.

        Follows the ``build`` and ``source`` symlinks in the release's module
        directory.

        Returns:
            pathlib.Path: the build directory or None if not found
        """
        for name in ("build", "source"):
            link = cls.modules / release / name
            try:
                if not link.is_symlink():
                    continue
                target = link.resolve()
            except (OSError, RuntimeError):
                continue
            if target.is_dir():
                return abspath(target)
        return None

    @classmethod
    def detect (cls, build):
        """
        Read the release string generated inside a build directory.

        Returns:
            str: the release or None if not found
        """
        build = pathlib.Path(build)
        release = build / "include/config/kernel.release"
        uts = build / "include/generated/utsrelease.h"
        if release.is_file():
            lines = release.read_text().splitlines()
            return lines[0].strip() if lines else None
        if uts.is_file():
            match = re.search(
                r'^#define UTS_RELEASE "(.*)"',
                uts.read_text(),
                re.MULTILINE
            )
            return match.group(1) if match else None
        return None

def describe (release):
    """Print why the build directory of an installed kernel wasn't found."""
    modules = Kernel.modules / release
    out.print(out.teal(f"details of {modules}:"))
    if not modules.is_dir():
        out.print(f"   {out.red('directory does not exist')}: {modules}")
        out.print("   available kernel module directories:")
        for k in Kernel.list():
            out.print(f"     {out.teal(k.modules)}")
        return
    out.print(f"   directory exists: {modules}")
    try:
        entries = sorted(modules.iterdir())
    except OSError:
        out.print("   (unable to list contents)")
    else:
        out.print("   contents:")
        for p in entries[:20]:
            out.print(f"     {p.name}")
    for name in ("build", "source"):
        link = modules / name
        if link.is_symlink():
            target = pathlib.Path(os.path.realpath(link))
            out.print(f"   {name} link: {link} → {out.teal(target)}")
            if not target.is_dir():
                out.print(f"     {out.red('(target directory does not exist)')}")
        else:
            out.print(f"   {name} link: {link} (not found or not a symlink)")

def target (name):
    """
    Resolve the kernel to be removed.

    Args:
        name (str): boot image name (``vmlinuz-*``) or build directory

    Returns:
        Kernel: the removal target
    """
    path = pathlib.Path(name)
    build = None
    if path.name.startswith("vmlinuz-"):
        release = path.name[len("vmlinuz-"):]
        if release:
            build = Kernel.locate(release)
            if build:
                log.info(f"found build directory from {Kernel.modules}: {build}")
            else:
                log.warning(
                    f"could not find build directory from {Kernel.modules} "
                    f"for {release}"
                )
                describe(release)
    else:
        build = abspath(name)
        if not build.is_dir():
            raise FileNotFoundError(
                f"error: build directory {build} does not exist"
            )
        if build == root:
            raise ValueError(f"error: refusing to operate on {root}")
        if not (
            (build / ".config").is_file() or
            (build / "include/config/kernel.release").is_file()
        ):
            log.warning(
                f"no .config or kernel.release found in {build}, "
                "release detection may fail"
            )
        release = Kernel.detect(build)
    if not release:
        release = ask("kernel release string (e.g. 6.8.0-custom): ")
    return Kernel(release, build)

def rm (path):
    """
    Delete a file or directory tree if present.

    Uses ``sudo rm -rf`` unless running as root.

    Returns:
        bool: True if something was deleted
    """
    path = pathlib.Path(path)
    if path == root:
        raise ValueError(f"error: refusing to remove {root}")
    if not path.exists() and not path.is_symlink():
        return False
    log.info(f"deleting {path}")
    if not privileged():
        subprocess.run(sudo(["rm", "-rf", "--", str(path)]), check=True)
    elif path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
    return True

@cli
def build (argv):
    """
    Build and install a kernel.
    ===========================

    Interactively asks for a kernel source tree, an out-of-tree build
    directory, the number of parallel jobs and a ``CONFIG_LOCALVERSION``
    suffix, then builds and installs the kernel and updates GRUB.

    Environment
    -----------

    ``LOG_FILE``
      session log (default: ``./kernel_build_<timestamp>.log``)

    Process Outline
    ---------------

    This command is a mere wrapper to::

      cd ${src}
      make mrproper
      make O=${build} olddefconfig
      make O=${build} menuconfig
      ./scripts/config --file ${build}/.config \\
        --set-str CONFIG_LOCALVERSION ${localversion}
      make O=${build} -j${jobs} -s
      sudo make INSTALL_MOD_STRIP=1 O=${build} modules_install
      sudo make O=${build} install
      sudo update-grub

    Any failing step aborts the whole process, leaving everything done so
    far in place.
    """
    parser = argparse.ArgumentParser(
        prog="kernel-build",
        description="Build and install a kernel.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.parse_args(argv)
    path = setup_logging(logfile("kernel_build"))
    log.info("starting kernel build process")

    session = Session.prompt()

    # change to source directory
    os.chdir(session.src)
    os.environ["LINUX_BUILD_DIR"] = str(session.build)
    log.info(f"environment exported: LINUX_BUILD_DIR={session.build}")

    # prepare build directory
    log.info(f"creating build directory {session.build}")
    session.build.mkdir(parents=True, exist_ok=True)
    o = f"O={session.build}"
    run("make mrproper", ["make", "mrproper"])
    run("make olddefconfig", ["make", o, "olddefconfig"])
    if not session.config.is_file():
        raise FileNotFoundError(
            f"error: missing {session.config} after olddefconfig"
        )

    # configure
    log.info(
        "when menuconfig opens, ensure CONFIG_LOCALVERSION is set to "
        f'"{session.localversion}"'
    )
    run("make menuconfig", ["make", o, "menuconfig"], tty=True)
    set_localversion(session)
    verify_localversion(session)

    # build
    run(
        f"building kernel (make -j{session.jobs} -s)",
        ["make", o, f"-j{session.jobs}", "-s"]
    )

    # install
    run("installing modules", sudo([
        "make", "INSTALL_MOD_STRIP=1", o, "modules_install"
    ]))
    run("installing kernel", sudo(["make", o, "install"]))
    run("updating GRUB", sudo(["update-grub"]))
    grub = Kernel.boot / "grub/grub.cfg"
    run(f"showing updated {grub}", sudo(["cat", grub]))

    log.info("kernel build and installation completed successfully")
    log.info(f"all command output was recorded in {path}")

@cli
def remove (argv):
    """
    Remove an installed kernel.
    ===========================

    Interactively asks for a boot image name (``vmlinuz-<release>``) or a
    kernel build directory, resolves the kernel release and deletes
    everything installed for it.

    Environment
    -----------

    ``LOG_FILE``
      session log (default: ``./kernel_remove_<timestamp>.log``)

    Files
    -----

    The following files are removed, if present:

    * ``/boot/{vmlinuz,System.map,config,initrd.img,abi,retpoline}-${release}``
    * ``/boot/initrd.img-${release}.old``
    * ``/lib/modules/${release}``
    * ``/usr/src/linux-headers-${release}``

    The build directory is only removed after a separate confirmation and
    never if it is ``/``.
    """
    parser = argparse.ArgumentParser(
        prog="kernel-remove",
        description="Remove an installed kernel.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.parse_args(argv)
    setup_logging(logfile("kernel_remove"))
    log.info("starting kernel removal")

    kernel = target(ask(
        "linux image name (/boot/vmlinuz-*) or build directory path: "
    ))
    log.info(f"kernel release detected: {kernel.release}")
    for l in str(kernel).splitlines():
        out.print(f"   {out.teal(l)}")

    if not confirm(
        "proceed to remove installed kernel artifacts for "
        f"{kernel.release}? [y/N]: "
    ):
        raise RuntimeError("error: aborting at user request")

    log.info(f"removing kernel images from {Kernel.boot}")
    for p in kernel.images:
        rm(p)
    log.info(f"removing module directory {kernel.modules}")
    rm(kernel.modules)
    log.info("removing headers if present")
    rm(kernel.headers)

    # remove build directory
    if kernel.build and kernel.build.is_dir():
        if abspath(kernel.build) == root:
            log.warning(f"refusing to remove {root}, skipping build directory")
        else:
            out.ewarn(
                "this operation will permanently delete the build directory "
                f"{out.teal(kernel.build)}"
            )
            if confirm(f"remove build directory {kernel.build}? [y/N]: "):
                log.info(f"removing build directory {kernel.build}")
                rm(kernel.build)
                log.info("build directory removed")
            else:
                log.warning("build directory removal cancelled by user")

    log.info("kernel removal steps completed")
