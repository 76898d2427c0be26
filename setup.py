from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pykramer',
    packages=['pykramer'],
    version=version,
    license='Apache 2.0',
    description='Control Kramer video/audio matrix switchers (Protocol 2000 and 3000)',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='johnno',
    author_email='johnno@example.com',
    url='https://github.com/johnno/pykramer',
    download_url=f'https://github.com/johnno/pykramer/archive/{version}.tar.gz',
    keywords=['Kramer', 'Matrix', 'Protocol 2000', 'Protocol 3000', 'AV routing'],
    python_requires='>=3.10',
    install_requires=[],
    extras_require={
        'test': [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Software Development :: Build Tools',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
