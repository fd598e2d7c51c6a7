"""
Constants and shared configuration for Lampstack.
"""

# Click output styles used throughout the application
CLICK_STYLE = {
    "success": {"fg": "green", "bold": True},
    "info": {"fg": "cyan"},
    "warning": {"fg": "yellow"},
    "error": {"fg": "red"},
}

# Configuration file patterns to search for
CONFIG_FILE_PATTERNS = [
    "lampstack.yaml",
    "lampstack.yaml.j2",
    "lampstack.yaml.mako",
    ".lampstack.yaml",
    ".lampstack.yaml.j2",
    ".lampstack.yaml.mako",
]

# Process exit codes, one per failure class
EXIT_CODES = {
    "ok": 0,
    "error": 1,
    "validation": 2,
    "reconciliation": 3,
    "bootstrap_step": 4,
    "readiness_timeout": 5,
    "state_lock": 6,
}

# Terraform workspace layout
DEFAULT_WORKSPACE = ".lampstack"
TERRAFORM_CONFIG_FILE = "main.tf.json"
TERRAFORM_PLAN_FILE = "tfplan"
STATE_LOCK_FILE = ".lampstack.lock"
AWS_PROVIDER_SOURCE = "hashicorp/aws"
AWS_PROVIDER_VERSION = "~> 5.0"

# Resource constraints
VALID_VOLUME_TYPES = {"gp2", "gp3", "io1", "io2", "standard"}
VALID_PROTOCOLS = {"tcp", "udp"}
OPERATOR_SOURCE = "operator"
ANY_IPV4 = "0.0.0.0/0"
USER_DATA_LIMIT = 16384

# Bootstrap runner defaults
DEFAULT_STEP_TIMEOUT = 900
DEFAULT_MARKER_PATH = "/var/lib/lampstack/bootstrap-complete"
DEFAULT_STATUS_PATH = "/var/lib/lampstack/status.json"
DEFAULT_LOG_PATH = "/var/log/lampstack-bootstrap.log"
DEFAULT_SECRETS_PATH = "/etc/lampstack/secrets.env"

# Readiness gate defaults
READY_RETRIES = 10
READY_DELAY = 1.0
READY_BACKOFF = 2.0
READY_MAX_DELAY = 15.0
READY_TIMEOUT = 120.0

# Runner states
STATE_NOT_STARTED = "not_started"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

# Default configuration example for init command
DEFAULT_CONFIG_TEMPLATE = """\
region: us-east-1
operator_cidr: 203.0.113.10/32
tags:
  Project: wordpress

networks:
  main:
    cidr: 10.0.0.0/16

subnets:
  public:
    network: main
    cidr: 10.0.1.0/24
    availability_zone: us-east-1a
    public: true

firewalls:
  web:
    network: main
    ingress:
      - port: 22
        sources: [operator]
      - port: 80
        sources: [0.0.0.0/0]
      - port: 443
        sources: [0.0.0.0/0]

instances:
  wordpress:
    subnet: public
    firewalls: [web]
    image: ami-0c7217cdde317cfec
    instance_type: t3.micro
    key_name: wordpress-key
    ssh_user: ubuntu
    root_volume:
      size: 20
      type: gp3
    bootstrap: lamp

bootstrap:
  lamp:
    secrets:
      DB_PASSWORD:
        generate: 24
    steps:
      - name: update-packages
        run: apt-get update -y
      - name: install-packages
        check: dpkg -s apache2 mysql-server php php-mysql libapache2-mod-php >/dev/null 2>&1
        run: >-
          DEBIAN_FRONTEND=noninteractive apt-get install -y
          apache2 mysql-server php php-mysql libapache2-mod-php curl
        timeout: 1200
      - name: start-mysql
        check: systemctl is-active --quiet mysql
        run: systemctl enable --now mysql
      - name: create-database
        ready:
          command: mysqladmin ping --silent
          retries: 10
          delay: 2
          timeout: 120
        check: mysql -e "USE wordpress" >/dev/null 2>&1
        run: |
          mysql -e "CREATE DATABASE IF NOT EXISTS wordpress;
            CREATE USER IF NOT EXISTS 'wordpress'@'localhost' IDENTIFIED BY '${DB_PASSWORD}';
            GRANT ALL PRIVILEGES ON wordpress.* TO 'wordpress'@'localhost';
            FLUSH PRIVILEGES;"
      - name: install-wordpress
        check: test -f /var/www/html/wp-config.php
        run: |
          set -e
          cd /tmp
          curl -fsSLO https://wordpress.org/latest.tar.gz
          tar -xzf latest.tar.gz
          cp -r wordpress/. /var/www/html/
          rm -f /var/www/html/index.html
          cd /var/www/html
          sed -e "s/database_name_here/wordpress/" \\
              -e "s/username_here/wordpress/" \\
              -e "s/password_here/${DB_PASSWORD}/" \\
              wp-config-sample.php > wp-config.php
          chown -R www-data:www-data /var/www/html
      - name: start-apache
        check: systemctl is-active --quiet apache2
        run: systemctl enable --now apache2
      - name: verify-site
        ready: curl -fsS -o /dev/null http://localhost/
        run: curl -fsS -o /dev/null http://localhost/wp-login.php
"""
