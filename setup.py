from setuptools import find_packages, setup

setup(
    name="ssh-session-kit",
    version="0.1.0",
    description="SSH session orchestration: connection state, remote commands and SFTP transfers over paramiko",
    author="Daniel T Sasser II",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "paramiko>=3.4.0",
    ],
    python_requires=">=3.10",
    extras_require={
        "dev": [
            "pytest",
            "build",
            "twine",
        ],
    },
)
