import argparse
import os
import shutil
import subprocess
import sys

ROOT = os.path.abspath(os.path.dirname(__file__))
CLIENT_DIR = os.path.join(ROOT, 'client')
LANDING_DIR = os.path.join(ROOT, 'landing-page')
DIST_DIR = os.path.join(ROOT, 'dist')


def copy_contents(source, destination):
    """Copies every file and folder inside source into destination."""
    os.makedirs(destination, exist_ok=True)
    for name in os.listdir(source):
        src = os.path.join(source, name)
        dst = os.path.join(destination, name)
        if os.path.isdir(src):
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dst)


def build_client():
    print("⚙️  Building React dashboard...")
    subprocess.run('npm install && npm run build', shell=True, cwd=CLIENT_DIR, check=True)


def print_tree(path, prefix=''):
    entries = sorted(os.listdir(path))
    for i, name in enumerate(entries):
        last = i == len(entries) - 1
        print(f"{prefix}{'└── ' if last else '├── '}{name}")
        full = os.path.join(path, name)
        # Only the top two levels
        if os.path.isdir(full) and not prefix:
            print_tree(full, prefix + ('    ' if last else '│   '))


def build(skip_build=False):
    if not skip_build:
        build_client()

    client_build = os.path.join(CLIENT_DIR, 'build')
    if not os.path.isdir(client_build):
        raise FileNotFoundError(f"No client build found at {client_build}")

    if os.path.exists(DIST_DIR):
        shutil.rmtree(DIST_DIR)
    os.makedirs(DIST_DIR)

    print("📁 Copying files...")
    copy_contents(LANDING_DIR, DIST_DIR)
    copy_contents(client_build, os.path.join(DIST_DIR, 'dashboard'))

    print("✅ Build complete! Structure:")
    print("dist/")
    print_tree(DIST_DIR)


def main():
    parser = argparse.ArgumentParser(description="Builds the landing page and dashboard into dist/")
    parser.add_argument("--skip-build", action="store_true", help="Reuse the existing client/build output")
    args = parser.parse_args()

    try:
        build(skip_build=args.skip_build)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        print(f"❌ Build failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
