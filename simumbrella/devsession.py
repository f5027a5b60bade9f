#!/usr/bin/env python3

'''
# Sim Umbrella umb-dev Utility

Runs the chipper dev-server and the perennial-alias strings watcher side by side,
with both outputs passed straight through to the terminal. When either process
exits (or the session is interrupted) the other one is terminated and the session
ends; there is no restart.
'''

#ANCHOR: Native Dependencies
import os, sys, signal, time, argparse, typing
from subprocess import Popen

from simumbrella import umb
from simumbrella.umb import debug, error, style, Style, Workspace, CHIPPER, PERENNIAL_ALIAS


#ANCHOR: Globals
POLL_INTERVAL = 0.2
CLEAN_SIGNALS = (signal.SIGTERM, signal.SIGINT)
''' Signals that end a child without it counting as a failure '''
WATCH_STRINGS_CMD = './bin/watch-strings.zsh'


#ANCHOR: Utility Types
class Child:
    ''' A named long-running child process with inherited standard streams. '''

    def __init__(self, name:str, cmd:typing.Union[str, typing.List[str]], cwd:str, shell:bool=False):
        self.name = name
        self.cmd = cmd
        self.cwd = cwd
        self.shell = shell
        self.proc = None

    def start(self, spawn:typing.Callable=Popen):
        debug(f"Starting {self.name}...")
        self.proc = spawn(self.cmd, cwd=self.cwd, shell=self.shell)

    def poll(self) -> typing.Union[int, None]:
        return self.proc.poll() if self.proc else None

    def terminate(self):
        ''' Sends SIGTERM if the process is still running. '''
        if self.proc is not None and self.proc.poll() is None:
            debug(f"Stopping {self.name}", level=1)
            self.proc.send_signal(signal.SIGTERM)

    def wait(self) -> typing.Union[int, None]:
        return self.proc.wait() if self.proc else None

def exit_status(returncode:int) -> int:
    '''
    Maps a child's return code to the session exit code.

    Args:
        returncode: `Popen.returncode` (negative when killed by a signal)

    Returns:
        0 for a clean exit or a SIGTERM/SIGINT kill, the code itself for other exits, 1 for other signals.
    '''
    if returncode < 0:
        return 0 if -returncode in CLEAN_SIGNALS else 1
    return returncode

class DevSession:
    '''
    Supervises a set of children: the first one to exit ends the session and
    the rest are sent SIGTERM.
    '''

    def __init__(self, children:typing.List[Child], spawn:typing.Callable=Popen, poll_interval:float=POLL_INTERVAL):
        self.children = children
        self.spawn = spawn
        self.poll_interval = poll_interval
        self.exit_code = None
        ''' Session exit code, set once by whichever event ends the session first '''

    def shutdown(self, code:int=0, exclude:Child=None):
        '''
        Ends the session: records `code` (unless already ended) and terminates the remaining children.

        Args:
            code: session exit code
            exclude: child that already exited
        '''
        if self.exit_code is None:
            self.exit_code = code
        for child in self.children:
            if child is not exclude:
                child.terminate()

    def handle_signal(self, signum:int, frame=None):
        debug(f"\nReceived {signal.Signals(signum).name}, stopping dev session")
        self.shutdown(0)

    def check(self) -> typing.Union[int, None]:
        '''
        Polls every child once and ends the session if one has exited.

        Returns:
            The session exit code once the session has ended, `None` while it is still running.
        '''
        if self.exit_code is not None:
            return self.exit_code
        for child in self.children:
            returncode = child.poll()
            if returncode is None:
                continue
            status = exit_status(returncode)
            if status:
                error(f"{child.name} exited with code {returncode}")
            else:
                debug(f"{child.name} exited")
            self.shutdown(status, exclude=child)
            break
        return self.exit_code

    def launch(self):
        ''' Starts every child. If one fails to start, the ones already running are stopped before re-raising. '''
        try:
            for child in self.children:
                child.start(self.spawn)
        except Exception:
            self.shutdown(1)
            for child in self.children:
                child.wait()
            raise

    def wait(self) -> int:
        ''' Blocks until the session ends and every child has exited. '''
        while self.check() is None:
            time.sleep(self.poll_interval)
        for child in self.children:
            child.wait()
        return self.exit_code

    def run(self) -> int:
        ''' Installs SIGINT/SIGTERM handlers, starts the children and waits for the session to end. '''
        for signum in CLEAN_SIGNALS:
            signal.signal(signum, self.handle_signal)
        self.launch()
        return self.wait()


#ANCHOR: Utility Methods
def build_session(ws:Workspace, port:int=None, **kwargs) -> DevSession:
    '''
    Builds the dev-server + watch-strings session for a workspace.

    Args:
        ws: workspace holding chipper and perennial-alias
        port: dev-server port (defaults to the configured port)

    Returns:
        A `DevSession` that has not been started yet.
    '''
    hint = 'Run umb add-sim <sim> to fetch chipper/perennial-alias.'
    for name in (CHIPPER, PERENNIAL_ALIAS):
        if not os.path.isdir(ws.repo_path(name)):
            raise Exception(f"{ws.repo_path(name)} is missing. {hint}")
    port = port or ws.config.dev_server_port
    watch = Child('watch-strings', WATCH_STRINGS_CMD, ws.repo_path(PERENNIAL_ALIAS), shell=True)
    dev_server = Child(f'chipper dev-server (port {port})', ['npm', 'exec', 'grunt', 'dev-server', '--', f'--port={port}'], ws.repo_path(CHIPPER))
    return DevSession([watch, dev_server], **kwargs)


#ANCHOR: Main
def main():
    parser = argparse.ArgumentParser(prog='umb-dev', formatter_class=argparse.RawTextHelpFormatter, description=__doc__.strip())
    parser.add_argument('--root', dest='root', action='store', default=None, help='Workspace root (defaults to $UMBRELLA_ROOT or the current directory)')
    parser.add_argument('--port', '-p', dest='port', type=int, action='store', default=None, help='Port for the chipper dev-server')
    parser.add_argument('--verbosity', '-v', dest='verbosity', action='store', const=1, default=umb.DEFAULT_DEBUG_LEVEL, nargs='?', type=int, help=argparse.SUPPRESS)
    args = parser.parse_args()
    umb.DEBUG_LEVEL = args.verbosity

    try:
        ws = Workspace(args.root or os.environ.get('UMBRELLA_ROOT') or os.getcwd())
        session = build_session(ws, port=args.port)
        debug(style(f"Dev session running in {ws.root} (Ctrl+C to stop)", Style.BOLD))
        code = session.run()
    except Exception as e:
        if umb.DEBUG_LEVEL:
            raise
        error('Error: ' + str(e))
        sys.exit(1)
    sys.exit(code)

if __name__ == '__main__':
    main()
