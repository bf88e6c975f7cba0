from setuptools import setup, find_packages


setup(
    name="avrtools",
    version="0.1.0",
    description="Wrappers for AVR programmer and debug bridge command-line tools",
    license="0-clause BSD License",
    python_requires=">=3.11",
    setup_requires=[
        "setuptools",
    ],
    install_requires=[
        "platformdirs",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={
        "console_scripts": [
            "avrtools = avrtools.cli:run_main"
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved', # ' :: 0-clause BSD License', (not in PyPI)
        'Topic :: Software Development :: Embedded Systems',
        'Topic :: System :: Hardware',
    ],
)
