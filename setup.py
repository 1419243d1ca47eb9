from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="educafric",
    version="1.0.0",
    author="EducAfric",
    author_email="contact@educafric.com",
    description="EducAfric multi-school management platform",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/educafric/educafric",
    py_modules=[
        'academics',
        'admin',
        'app',
        'auth',
        'build',
        'bulletins',
        'config',
        'dashboards',
        'documents',
        'errors',
        'fees',
        'forms',
        'grading',
        'gunicorn_config',
        'health',
        'models',
        'notifications',
        'offline_queue',
        'security',
        'subscriptions',
        'sync',
        'tenancy',
        'wsgi',
    ],
    include_package_data=True,
    install_requires=[
        'Flask==2.3.3',
        'Flask-SQLAlchemy==3.0.5',
        'Flask-WTF==1.2.1',
        'Flask-Limiter==3.5.0',
        'python-dotenv==1.0.0',
        'SQLAlchemy==2.0.43',
        'WTForms==3.0.1',
        'Werkzeug==2.3.7',
        'gunicorn==21.2.0',
        'psycopg2-binary==2.9.10',
        'bcrypt==4.0.1',
        'python-jose==3.3.0',
        'reportlab==4.0.4',
        'requests==2.31.0',
        'redis==5.0.1',
    ],
    extras_require={
        'test': [
            'pytest==8.3.3',
        ],
    },
    python_requires='>=3.9',
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'educafric=wsgi:main',
        ],
    },
)
